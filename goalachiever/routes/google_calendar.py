"""
Google Calendar Integration Routes
Handles OAuth connection, push channels and event listing
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import config
from ..auth import Principal, get_current_user
from ..database import get_db
from ..models_google_calendar import GOOGLE_CALENDAR_PROVIDER, CalendarWebhookChannel, UserIntegration
from ..schemas import WatchChannelResponse
from ..security_utils import (
    TokenDecryptionError,
    create_oauth_state,
    decrypt_token,
    encrypt_token,
    generate_secure_token,
    verify_oauth_state,
)
from ..services.calendar_sync_service import (
    CalendarNotConnectedError,
    TokenRefreshError,
    extract_event_datetime,
    get_active_integration,
    get_integration,
    get_user_timezone,
    get_valid_access_token,
)
from ..services.google_calendar_service import (
    GCAL_ID_PREFIX,
    CalendarSyncError,
    GoogleAPIError,
    GoogleCalendarClient,
    get_google_client,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["google-calendar"])


def calendar_http_error(error: CalendarSyncError) -> HTTPException:
    """Map sync layer failures onto the HTTP status the client should see"""
    if isinstance(error, CalendarNotConnectedError):
        return HTTPException(status_code=401, detail="Not connected to Google Calendar. Please connect first.")
    if isinstance(error, TokenRefreshError):
        return HTTPException(status_code=401, detail=str(error))
    return HTTPException(status_code=502, detail="Google Calendar request failed")


def _settings_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{config.APP_URL}/settings?{urlencode(params)}", status_code=302)


# ============================================================================
# OAUTH
# ============================================================================


@router.get("/oauth/start")
async def start_google_calendar_oauth(
    principal: Principal = Depends(get_current_user),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """Initiate Google Calendar OAuth flow"""
    if not google.is_configured:
        logger.error("❌ Google Calendar OAuth requested but GOOGLE_CLIENT_ID/SECRET are not set")
        raise HTTPException(status_code=500, detail="Google Calendar integration not configured")

    try:
        state = create_oauth_state(principal.user_id)
    except RuntimeError as e:
        logger.error(f"❌ Cannot sign OAuth state: {e}")
        raise HTTPException(status_code=500, detail="Google Calendar integration not configured") from e

    logger.info(f"Google Calendar OAuth initiated for user: {principal.user_id}")
    return {"authUrl": google.build_authorization_url(state)}


@router.get("/oauth/callback")
async def handle_google_calendar_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """
    Google redirects the browser here after consent.
    Every outcome redirects back to the settings page.
    """
    if error:
        logger.warning(f"Google OAuth error: {error}")
        return _settings_redirect(error="google_auth_denied")

    if not code:
        return _settings_redirect(error="no_code")

    if not google.is_configured:
        logger.error("❌ Google Calendar callback received but OAuth is not configured")
        return _settings_redirect(error="not_configured")

    payload = verify_oauth_state(state) if state else None
    if not payload:
        return _settings_redirect(error="invalid_state")
    user_id = payload["userId"]

    try:
        tokens = await google.exchange_code(code)
    except GoogleAPIError as e:
        logger.error(f"❌ Token exchange failed for user {user_id}: {e}")
        return _settings_redirect(error="token_exchange_failed")

    try:
        email = await google.fetch_user_email(tokens["access_token"])
        _store_credential(db, user_id, tokens, email)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Google Calendar callback error: {str(e)}")
        return _settings_redirect(error="callback_failed")

    logger.info(f"✅ Google Calendar connected for user: {user_id}")
    return _settings_redirect(success="google_connected")


def _store_credential(db: Session, user_id: str, tokens: dict, email: Optional[str]) -> UserIntegration:
    """Upsert the single Google credential of the user"""
    expiry = datetime.utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))

    def apply(integration: UserIntegration) -> None:
        integration.access_token = encrypt_token(tokens["access_token"])
        # Google omits the refresh token on some re-consents; keep the stored one
        if tokens.get("refresh_token"):
            integration.refresh_token = encrypt_token(tokens["refresh_token"])
        integration.token_expiry = expiry
        integration.scopes = tokens.get("scope")
        integration.provider_email = email
        integration.is_active = True
        integration.updated_at = datetime.utcnow()

    integration = get_integration(db, user_id)
    if not integration:
        integration = UserIntegration(user_id=user_id, provider=GOOGLE_CALENDAR_PROVIDER)
        db.add(integration)
    apply(integration)

    try:
        db.commit()
    except IntegrityError:
        # A concurrent callback inserted the row first
        db.rollback()
        integration = get_integration(db, user_id)
        if not integration:
            raise
        apply(integration)
        db.commit()

    return integration


@router.get("/status")
async def get_google_calendar_status(
    principal: Principal = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Get Google Calendar connection status"""
    integration = get_integration(db, principal.user_id)
    if not integration or not integration.is_active:
        return {"connected": False}

    return {
        "connected": True,
        "email": integration.provider_email,
        "expiresAt": integration.token_expiry.isoformat() if integration.token_expiry else None,
    }


@router.delete("/connection")
async def disconnect_google_calendar(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """Disconnect Google Calendar"""
    integration = get_integration(db, principal.user_id)

    if integration:
        try:
            token = decrypt_token(integration.access_token)
            if token:
                await google.revoke_token(token)
        except (GoogleAPIError, TokenDecryptionError) as e:
            # Revocation is best effort; the local credential goes away regardless
            logger.warning(f"⚠️ Failed to revoke Google token for user {principal.user_id}: {e}")

        db.delete(integration)

    db.query(CalendarWebhookChannel).filter(
        CalendarWebhookChannel.user_id == principal.user_id, CalendarWebhookChannel.is_active.is_(True)
    ).update({"is_active": False}, synchronize_session=False)
    db.commit()

    logger.info(f"✅ Google Calendar disconnected for user: {principal.user_id}")
    return {"success": True, "message": "Google Calendar disconnected"}


# ============================================================================
# PUSH CHANNELS
# ============================================================================


@router.post("/watch", response_model=WatchChannelResponse)
async def register_watch_channel(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """Ask Google to notify the webhook about changes on the primary calendar"""
    try:
        integration = get_active_integration(db, principal.user_id)
        access_token = await get_valid_access_token(integration, db, google)
        channel_id = str(uuid.uuid4())
        token = generate_secure_token()
        response = await google.watch_events(
            access_token,
            channel_id=channel_id,
            token=token,
            address=f"{config.WEBHOOK_BASE_URL.rstrip('/')}/calendar/webhook",
        )
    except CalendarSyncError as e:
        raise calendar_http_error(e) from e

    expiration = None
    if response.get("expiration"):
        # Milliseconds since epoch
        expiration = datetime.utcfromtimestamp(int(response["expiration"]) / 1000)

    db.query(CalendarWebhookChannel).filter(
        CalendarWebhookChannel.user_id == principal.user_id, CalendarWebhookChannel.is_active.is_(True)
    ).update({"is_active": False}, synchronize_session=False)

    channel = CalendarWebhookChannel(
        user_id=principal.user_id,
        channel_id=channel_id,
        resource_id=response["resourceId"],
        expiration=expiration,
        token=token,
        calendar_id="primary",
        is_active=True,
    )
    db.add(channel)
    db.commit()

    logger.info(f"📡 Watch channel {channel_id} registered for user {principal.user_id}")
    return WatchChannelResponse(
        channelId=channel_id,
        resourceId=channel.resource_id,
        expiration=expiration.isoformat() if expiration else None,
    )


@router.delete("/watch")
async def stop_watch_channels(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    channels = (
        db.query(CalendarWebhookChannel)
        .filter(CalendarWebhookChannel.user_id == principal.user_id, CalendarWebhookChannel.is_active.is_(True))
        .all()
    )

    access_token = None
    try:
        integration = get_active_integration(db, principal.user_id)
        access_token = await get_valid_access_token(integration, db, google)
    except CalendarSyncError as e:
        logger.warning(f"Stopping channels locally only for user {principal.user_id}: {e}")

    for channel in channels:
        if access_token:
            try:
                await google.stop_channel(access_token, channel.channel_id, channel.resource_id)
            except GoogleAPIError as e:
                logger.warning(f"⚠️ Failed to stop channel {channel.channel_id} with Google: {e}")
        channel.is_active = False

    db.commit()
    return {"success": True, "stopped": len(channels)}


# ============================================================================
# EVENTS
# ============================================================================


@router.get("/events")
async def list_calendar_events(
    timeMin: Optional[str] = None,
    timeMax: Optional[str] = None,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
    google: GoogleCalendarClient = Depends(get_google_client),
):
    """List primary calendar events shaped like time blocks"""
    now = datetime.utcnow()
    time_min = timeMin or now.isoformat(timespec="seconds") + "Z"
    time_max = timeMax or (now + timedelta(days=7)).isoformat(timespec="seconds") + "Z"

    try:
        integration = get_active_integration(db, principal.user_id)
        access_token = await get_valid_access_token(integration, db, google)
        items = await google.list_events(access_token, time_min, time_max)
    except CalendarSyncError as e:
        raise calendar_http_error(e) from e

    tz = get_user_timezone(db, principal.user_id)
    return {"events": [_to_time_block(item, tz) for item in items if item.get("status") != "cancelled"]}


def _to_time_block(event: dict, tz) -> dict:
    parsed = extract_event_datetime(event, tz)
    event_date, start, end = parsed if parsed else (None, None, None)
    return {
        "id": f"{GCAL_ID_PREFIX}{event.get('id')}",
        "date": event_date.isoformat() if event_date else None,
        "startTime": start.strftime("%H:%M") if start else None,
        "endTime": end.strftime("%H:%M") if end else None,
        "activityName": event.get("summary") or "(No title)",
        "description": event.get("description"),
        "source": GOOGLE_CALENDAR_PROVIDER,
        "start": event.get("start"),
        "end": event.get("end"),
    }
