"""
Google Calendar push notification webhook.

Google only tells us that *something* changed on a watched calendar; the
handler flags the user's synced records and queues a reconciliation job.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..models_google_calendar import CalendarWebhookChannel
from ..services.calendar_sync_service import get_settings_row, mark_records_needing_check
from ..services.sync_jobs import SyncJobQueue, get_sync_job_queue
from ..webhook_security import GoogleChannelHeaders, WebhookVerificationError, verify_channel_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar-webhook"])

CHANGE_STATES = ("exists", "updated")


@router.post("/webhook")
async def receive_calendar_notification(
    request: Request,
    db: Session = Depends(get_db),
    queue: SyncJobQueue = Depends(get_sync_job_queue),
):
    headers = GoogleChannelHeaders.from_request(request)
    logger.info(
        f"📨 Calendar webhook: channel={headers.channel_id} state={headers.resource_state} "
        f"message={headers.message_number}"
    )

    try:
        headers.require_identifiers()

        # Handshake sent right after a channel is created
        if headers.resource_state == "sync":
            return {"status": "acknowledged"}

        channel = (
            db.query(CalendarWebhookChannel).filter(CalendarWebhookChannel.channel_id == headers.channel_id).first()
        )
        if not channel or not channel.is_active:
            logger.info(f"Ignoring notification for unknown or inactive channel {headers.channel_id}")
            return {"status": "ignored"}

        verify_channel_token(channel.token, headers.channel_token)
    except WebhookVerificationError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e

    user_id = channel.user_id
    settings = get_settings_row(db, user_id)
    if not settings or not settings.two_way_sync_enabled:
        return {"status": "two_way_sync_disabled"}

    if headers.resource_state in CHANGE_STATES:
        marked = mark_records_needing_check(db, user_id)
        logger.info(f"Marked {marked} sync records as needs_check for user {user_id}")
        try:
            await queue.enqueue_sync(user_id)
        except Exception as e:
            # needs_check marks stay in place for the periodic auto sync
            logger.error(f"❌ Failed to queue calendar sync for user {user_id}: {str(e)}")

    return {"status": "processed"}


@router.get("/webhook")
async def calendar_webhook_health():
    return {"status": "webhook endpoint active"}
