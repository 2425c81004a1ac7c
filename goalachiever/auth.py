import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .database import get_db
from .models import Profile
from .security_utils import verify_session_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

PRINCIPAL_USER = "user"
PRINCIPAL_ANONYMOUS = "anonymous"
PRINCIPAL_ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Identity resolved once per request and consumed by every handler"""

    kind: str
    user_id: str
    email: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.kind in (PRINCIPAL_USER, PRINCIPAL_ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.kind == PRINCIPAL_ADMIN


@dataclass(frozen=True)
class AnonymousIdentityPolicy:
    """
    Fallback identity for requests without a session.
    Only ever active in a development environment.
    """

    enabled: bool
    user_id: Optional[str] = None

    @classmethod
    def from_config(cls) -> "AnonymousIdentityPolicy":
        if config.ALLOW_DEMO_USER and config.ENVIRONMENT != "development":
            logger.warning(
                f"⚠️ ALLOW_DEMO_USER ignored outside development (ENVIRONMENT={config.ENVIRONMENT})"
            )
        enabled = config.ALLOW_DEMO_USER and config.ENVIRONMENT == "development" and bool(config.DEMO_USER_ID)
        return cls(enabled=enabled, user_id=config.DEMO_USER_ID if enabled else None)

    def resolve(self) -> Optional[Principal]:
        if not self.enabled or not self.user_id:
            return None
        return Principal(kind=PRINCIPAL_ANONYMOUS, user_id=self.user_id)


_anonymous_policy: Optional[AnonymousIdentityPolicy] = None


def get_anonymous_policy() -> AnonymousIdentityPolicy:
    """Build the anonymous identity policy once per process"""
    global _anonymous_policy
    if _anonymous_policy is None:
        _anonymous_policy = AnonymousIdentityPolicy.from_config()
    return _anonymous_policy


def _get_or_create_profile(db: Session, user_id: str, email: Optional[str], name: Optional[str]) -> Profile:
    profile = db.query(Profile).filter(Profile.id == user_id).first()
    if profile:
        return profile

    logger.info(f"🆕 Creating profile for user: {user_id}")
    profile = Profile(id=user_id, email=email or "", full_name=name)
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        # Created by a concurrent request
        db.rollback()
        profile = db.query(Profile).filter(Profile.id == user_id).first()
        if not profile:
            raise
    else:
        db.refresh(profile)
    return profile


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    anonymous_policy: AnonymousIdentityPolicy = Depends(get_anonymous_policy),
) -> Principal:
    """Resolve the caller to an authenticated user, an admin, or the anonymous identity"""
    if not credentials:
        principal = anonymous_policy.resolve()
        if principal:
            logger.debug(f"Anonymous identity resolved: {principal.user_id}")
            return principal
        raise HTTPException(status_code=401, detail="Authentication required")

    claims = verify_session_token(credentials.credentials)
    if not claims or not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    user_metadata = claims.get("user_metadata") or {}
    profile = _get_or_create_profile(
        db,
        user_id=claims["sub"],
        email=claims.get("email"),
        name=user_metadata.get("full_name"),
    )

    kind = PRINCIPAL_ADMIN if profile.is_admin else PRINCIPAL_USER
    return Principal(kind=kind, user_id=profile.id, email=profile.email or None)


async def get_current_user(principal: Principal = Depends(get_principal)) -> Principal:
    """
    Require a real session.
    Anonymous identities cannot own calendar credentials.
    """
    if not principal.is_authenticated:
        raise HTTPException(
            status_code=401,
            detail="Please sign up or log in to connect Google Calendar. Demo accounts cannot use calendar sync.",
        )
    return principal


async def get_current_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal
