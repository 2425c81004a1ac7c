"""
Calendar Sync Routes
Manual sync, sync settings and pushing goals to Google Calendar
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import Principal, get_current_admin, get_current_user
from ..database import get_db
from ..schemas import PushToCalendarRequest, SyncSettingsUpdate
from ..services.calendar_push_service import push_goals_to_google
from ..services.calendar_settings_service import get_sync_settings, update_sync_settings
from ..services.calendar_sync_service import get_integration, get_sync_status, sync_from_google
from ..services.google_calendar_service import CalendarSyncError, GoogleCalendarClient, get_google_client
from ..services.sync_jobs import SyncJobQueue, get_sync_job_queue
from .google_calendar import calendar_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar-sync"])


@router.post("/sync")
async def sync_calendar_now(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """Pull changes from Google Calendar into linked time blocks"""
    try:
        result = await sync_from_google(db, principal.user_id, google)
    except CalendarSyncError as e:
        logger.warning(f"Manual calendar sync failed for user {principal.user_id}: {e}")
        raise calendar_http_error(e) from e
    return result.to_dict()


@router.get("/sync/status")
async def get_calendar_sync_status(
    principal: Principal = Depends(get_current_user), db: Session = Depends(get_db)
):
    return get_sync_status(db, principal.user_id)


@router.get("/sync/settings")
async def read_sync_settings(principal: Principal = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"settings": get_sync_settings(db, principal.user_id)}


@router.post("/sync/settings")
async def save_sync_settings(
    payload: SyncSettingsUpdate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    settings = update_sync_settings(db, principal.user_id, payload.changes())
    return {"settings": settings}


@router.post("/sync/push")
async def push_goals(
    payload: Optional[PushToCalendarRequest] = None,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """Publish goals at the requested levels as calendar events"""
    payload = payload or PushToCalendarRequest()
    try:
        return await push_goals_to_google(
            db,
            principal.user_id,
            google,
            levels=payload.levels,
            vision_id=payload.vision_id,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
    except CalendarSyncError as e:
        raise calendar_http_error(e) from e


@router.post("/admin/resync/{user_id}")
async def queue_user_resync(
    user_id: str,
    admin: Principal = Depends(get_current_admin),
    db: Session = Depends(get_db),
    queue: SyncJobQueue = Depends(get_sync_job_queue),
):
    """Queue a Google -> app sync for any connected user"""
    integration = get_integration(db, user_id)
    if not integration or not integration.is_active:
        raise HTTPException(status_code=404, detail="User has no active Google Calendar connection")

    job_id = await queue.enqueue_sync(user_id)
    logger.info(f"Admin {admin.user_id} queued calendar resync for user {user_id}")
    return {"queued": job_id is not None, "jobId": job_id}
