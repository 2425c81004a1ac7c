"""
Calendar sync job queue
"""
import asyncio
import logging
from typing import Optional

from arq import create_pool
from arq.connections import RedisSettings

from ..worker import SYNC_FROM_GOOGLE_TASK, get_redis_settings

logger = logging.getLogger(__name__)


def sync_job_id(user_id: str) -> str:
    """At most one pending sync per user; arq drops enqueues while this id is taken"""
    return f"calendar-sync:{user_id}"


class SyncJobQueue:
    def __init__(self, redis_settings: Optional[RedisSettings] = None, pool_timeout: float = 10.0):
        self.redis_settings = redis_settings
        self.pool_timeout = pool_timeout

    async def enqueue_sync(self, user_id: str) -> Optional[str]:
        """
        Queue a Google -> app sync for the user.
        Returns the job id, or None when a sync for this user is already pending.
        """
        pool = await asyncio.wait_for(
            create_pool(self.redis_settings or get_redis_settings()), timeout=self.pool_timeout
        )
        try:
            job = await pool.enqueue_job(SYNC_FROM_GOOGLE_TASK, user_id, _job_id=sync_job_id(user_id))
        finally:
            await pool.close()

        if job is None:
            logger.info(f"Calendar sync already queued for user {user_id}")
            return None

        logger.info(f"✅ Calendar sync queued for user {user_id}: {job.job_id}")
        return job.job_id


def get_sync_job_queue() -> SyncJobQueue:
    """Dependency injection for SyncJobQueue"""
    return SyncJobQueue()
