"""
Webhook Security Module

Verification for Google Calendar push notifications.
Google does not sign notifications; authenticity rests on:
- the channel id matching a channel we registered and still consider active
- the channel token (set at watch time) being echoed back unchanged
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Raised when a webhook notification fails verification"""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GoogleChannelHeaders:
    channel_id: Optional[str]
    resource_id: Optional[str]
    resource_state: Optional[str]
    channel_token: Optional[str]
    message_number: Optional[str]

    @classmethod
    def from_request(cls, request: Request) -> "GoogleChannelHeaders":
        headers = request.headers
        return cls(
            channel_id=headers.get("X-Goog-Channel-ID"),
            resource_id=headers.get("X-Goog-Resource-ID"),
            resource_state=headers.get("X-Goog-Resource-State"),
            channel_token=headers.get("X-Goog-Channel-Token"),
            message_number=headers.get("X-Goog-Message-Number"),
        )

    def require_identifiers(self) -> None:
        if not self.channel_id or not self.resource_id:
            logger.warning("🚫 Webhook rejected: missing channel or resource id")
            raise WebhookVerificationError("Invalid webhook request", status_code=400)


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_channel_token(expected_token: Optional[str], received_token: Optional[str]) -> None:
    """
    Channels registered without a token accept any notification;
    otherwise the echoed token must match exactly.
    """
    if not expected_token:
        return
    if not constant_time_compare(expected_token, received_token or ""):
        logger.warning("🚫 Webhook rejected: channel token mismatch")
        raise WebhookVerificationError("Invalid token", status_code=401)
