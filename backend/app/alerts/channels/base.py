"""
base.py — Shared plumbing for the Twilio-backed delivery channels.

The channel set is closed: SMS and VOICE. Both share credentials, the
REST client, webhook URL handling, signature validation and the mapping
from Twilio error codes onto the application's error hierarchy.

═══════════════════════════════════════════════════════════════════════════
TWILIO ERROR MAPPING
═══════════════════════════════════════════════════════════════════════════

    Twilio code / condition     Raised as
    ───────────────────────     ──────────────────────────
    21211                       InvalidNumberError
    21608                       UnverifiedNumberError
    21610                       OptedOutError
    HTTP status ≥ 500           TransientProviderError
    other TwilioRestException   ProviderError
    network error / timeout     TransientProviderError
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client as TwilioClient

from backend.app.core.config import settings
from backend.app.core.errors import (
    CareAlertError,
    ConfigurationError,
    InvalidNumberError,
    OptedOutError,
    ProviderError,
    TransientProviderError,
    UnverifiedNumberError,
)
from backend.app.alerts.phone import mask_phone

logger = logging.getLogger(__name__)

TWILIO_INVALID_NUMBER = 21211
TWILIO_UNVERIFIED_NUMBER = 21608
TWILIO_OPTED_OUT = 21610


class Channel(str, Enum):
    """Delivery channels — a fixed set of two."""
    SMS   = "sms"
    VOICE = "voice"


class TwilioChannel:
    """
    Base for SmsGateway and VoiceGateway.

    Missing credentials are a ConfigurationError at construction, never a
    failure at first send.
    """

    channel: Channel

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        webhook_base_url: Optional[str] = None,
        client: Optional[Any] = None,
        http_timeout: Optional[float] = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_PHONE_NUMBER
        base_url = webhook_base_url or settings.TWILIO_WEBHOOK_BASE_URL

        missing = [
            name for name, value in (
                ("TWILIO_ACCOUNT_SID", self.account_sid),
                ("TWILIO_AUTH_TOKEN", self.auth_token),
                ("TWILIO_PHONE_NUMBER", self.from_number),
                ("TWILIO_WEBHOOK_BASE_URL", base_url),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Twilio {self.channel.value} channel is not configured",
                missing=missing,
            )

        self.webhook_base_url = normalise_base_url(base_url)
        # Same bound as the scheduler's voice call timeout
        self.http_timeout = http_timeout or settings.VOICE_CALL_TIMEOUT_SECONDS
        self.client = client or TwilioClient(
            self.account_sid,
            self.auth_token,
            http_client=TwilioHttpClient(timeout=self.http_timeout),
        )
        self._validator = RequestValidator(self.auth_token)

    # ── Webhooks ──

    def callback_url(self, path: str) -> str:
        """Absolute, externally visible URL for a webhook path."""
        return f"{self.webhook_base_url}/{path.lstrip('/')}"

    def validate_signature(
        self,
        url: str,
        params: Mapping[str, Any],
        signature: Optional[str],
    ) -> bool:
        """Check an X-Twilio-Signature header against URL + form params."""
        if not signature:
            return False
        try:
            return bool(self._validator.validate(url, dict(params), signature))
        except Exception as e:
            logger.error("Twilio signature validation error: %s", e)
            return False

    # ── Errors ──

    def map_error(self, exc: BaseException, to: Optional[str] = None) -> CareAlertError:
        """Translate a Twilio SDK / transport failure into our taxonomy."""
        masked = mask_phone(to)
        channel = self.channel.value

        if isinstance(exc, CareAlertError):
            return exc

        if isinstance(exc, TwilioRestException):
            code = exc.code
            details: Dict[str, Any] = {"to": masked, "http_status": exc.status}
            if code == TWILIO_INVALID_NUMBER:
                return InvalidNumberError(
                    channel, "Invalid phone number", provider_code=code, **details
                )
            if code == TWILIO_UNVERIFIED_NUMBER:
                return UnverifiedNumberError(
                    channel,
                    "Phone number not verified (trial account limitation)",
                    provider_code=code,
                    **details,
                )
            if code == TWILIO_OPTED_OUT:
                return OptedOutError(
                    channel, "Recipient has opted out of messages",
                    provider_code=code, **details,
                )
            if exc.status is not None and exc.status >= 500:
                return TransientProviderError(
                    channel, f"Twilio unavailable: {exc.msg}",
                    provider_code=code, **details,
                )
            return ProviderError(
                channel, f"Twilio rejected request: {exc.msg}",
                provider_code=code, **details,
            )

        return TransientProviderError(
            channel, f"Twilio request failed: {exc}", to=masked,
        )


def normalise_base_url(url: str) -> str:
    """Strip whitespace and trailing slashes from a webhook base URL."""
    return url.strip().rstrip("/")
