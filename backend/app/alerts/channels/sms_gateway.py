"""
sms_gateway.py — SMS delivery channel via Twilio Programmable Messaging.

Delivery mechanism:
    • Twilio REST API (`client.messages.create`), run in a worker thread
    • Per-identity rate limit (`sms:ratelimit`, 100 / hour by default)
    • Delivery receipts via status callback webhook

═══════════════════════════════════════════════════════════════════════════
SEND PIPELINE
═══════════════════════════════════════════════════════════════════════════

    validate(to, body)  ──▶  rate limit(identity)  ──▶  Twilio  ──▶  SmsResult
         │                        │                       │
    ValidationError        RateLimitExceeded      ProviderError /
    (no side effects)                             TransientProviderError

    Validation happens first so a malformed request never consumes quota.
    The identity defaults to the destination number.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from backend.app.alerts.channels.base import Channel, TwilioChannel
from backend.app.alerts.phone import mask_phone, validate_e164
from backend.app.alerts.rate_limiter import RateLimiter
from backend.app.core.config import settings
from backend.app.core.errors import RateLimitExceeded, ValidationError

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600
SMS_STATUS_CALLBACK_PATH = "/webhooks/twilio/sms/status"
SMS_RATE_LIMIT_PREFIX = "sms:ratelimit"

# Delivery receipts worth an error / info line; everything else is debug
_FAILED_STATUSES = {"failed", "undelivered"}
_DELIVERED_STATUSES = {"delivered", "received", "read"}


@dataclass
class SmsResult:
    message_sid: str
    status: str
    to: str
    from_number: str
    body: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_sid": self.message_sid,
            "status": self.status,
            "to": mask_phone(self.to),
            "from": mask_phone(self.from_number),
            "body_length": len(self.body),
            "sent_at": self.sent_at.isoformat(),
        }


@dataclass
class SmsStatusEvent:
    """A parsed delivery receipt."""
    message_sid: str
    status: str
    to: str = ""
    from_number: str = ""
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SmsGateway(TwilioChannel):
    """
    Send SMS through Twilio, guarded by a per-identity rate limit.

    Parameters
    ----------
    rate_limiter : RateLimiter | None
        Defaults to a limiter built from SMS_RATE_LIMIT settings.
    Other keyword arguments are forwarded to TwilioChannel.
    """

    channel = Channel.SMS

    def __init__(self, *, rate_limiter: Optional[RateLimiter] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.rate_limiter = rate_limiter or RateLimiter(
            prefix=SMS_RATE_LIMIT_PREFIX,
            limit=settings.SMS_RATE_LIMIT,
            window_seconds=settings.SMS_RATE_LIMIT_WINDOW_SECONDS,
            use_redis=settings.REDIS_ENABLED,
            fail_open=settings.SMS_RATE_LIMITER_FAIL_OPEN,
        )
        self.status_callback_url = self.callback_url(SMS_STATUS_CALLBACK_PATH)

    async def send(
        self,
        to: str,
        body: str,
        rate_limit_key: Optional[str] = None,
    ) -> SmsResult:
        """
        Send one SMS.

        Raises
        ------
        ValidationError          malformed number or body (before any side effect)
        RateLimitExceeded        identity over quota, or limiter down (fail-closed)
        ProviderError            Twilio rejected the message
        TransientProviderError   network / provider outage
        """
        to = validate_e164(to, field="to")
        if not body or not body.strip():
            raise ValidationError(
                "Message body cannot be empty", field="body", error_code="INVALID_MESSAGE_BODY"
            )
        if len(body) > SMS_MAX_LENGTH:
            raise ValidationError(
                f"Message body too long (max {SMS_MAX_LENGTH} characters)",
                field="body",
                error_code="MESSAGE_TOO_LONG",
                length=len(body),
            )

        identity = rate_limit_key or to
        limit = await self.rate_limiter.check_and_increment(identity)
        if not limit.allowed:
            logger.warning(
                "SMS rate limit exceeded for %s (%s/%d)",
                identity if rate_limit_key else mask_phone(to),
                limit.current if limit.current is not None else "?",
                limit.limit,
            )
            raise RateLimitExceeded(
                "SMS rate limit exceeded",
                reset_at=limit.reset_at,
                limit=limit.limit,
                current=limit.current,
                identity=rate_limit_key,
                rate_limit_unavailable=limit.rate_limit_unavailable,
            )

        try:
            message = await asyncio.to_thread(
                self.client.messages.create,
                to=to,
                from_=self.from_number,
                body=body,
                status_callback=self.status_callback_url,
            )
        except Exception as e:
            error = self.map_error(e, to)
            logger.error(
                "SMS to %s failed: %s", mask_phone(to), error.message,
                extra={"channel": self.channel.value},
            )
            raise error from e

        result = SmsResult(
            message_sid=message.sid,
            status=message.status or "queued",
            to=to,
            from_number=self.from_number,
            body=body,
        )
        logger.info(
            "SMS sent to %s (%d chars)", mask_phone(to), len(body),
            extra={"message_sid": result.message_sid, "status": result.status},
        )
        return result

    # ── Delivery receipts ──

    def parse_status_callback(self, form: Mapping[str, Any]) -> SmsStatusEvent:
        """Parse a status callback form. MessageSid and status are required."""
        message_sid = str(form.get("MessageSid") or form.get("SmsSid") or "").strip()
        status = str(form.get("MessageStatus") or form.get("SmsStatus") or "").strip()

        if not message_sid:
            raise ValidationError(
                "Invalid SMS webhook: MessageSid is required",
                field="MessageSid",
                error_code="INVALID_WEBHOOK_DATA",
            )
        if not status:
            raise ValidationError(
                "Invalid SMS webhook: status is required",
                field="MessageStatus",
                error_code="INVALID_WEBHOOK_DATA",
                message_sid=message_sid,
            )

        event = SmsStatusEvent(
            message_sid=message_sid,
            status=status,
            to=str(form.get("To") or ""),
            from_number=str(form.get("From") or ""),
            error_code=str(form["ErrorCode"]) if form.get("ErrorCode") else None,
            error_message=str(form["ErrorMessage"]) if form.get("ErrorMessage") else None,
        )
        self._log_status_event(event)
        return event

    def _log_status_event(self, event: SmsStatusEvent) -> None:
        extra = {"message_sid": event.message_sid, "status": event.status}
        if event.status in _FAILED_STATUSES or event.error_code:
            logger.error(
                "SMS to %s %s (error %s: %s)",
                mask_phone(event.to), event.status,
                event.error_code, event.error_message, extra=extra,
            )
        elif event.status in _DELIVERED_STATUSES:
            logger.info("SMS to %s delivered", mask_phone(event.to), extra=extra)
        else:
            logger.debug("SMS to %s %s", mask_phone(event.to), event.status, extra=extra)

    # ── Quota administration ──

    async def get_sms_count(self, identity: str) -> int:
        return await self.rate_limiter.get_count(identity)

    async def reset_rate_limit(self, identity: str) -> None:
        await self.rate_limiter.reset(identity)
        logger.info("SMS rate limit reset for %s", identity)
