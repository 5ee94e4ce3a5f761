"""
voice_gateway.py — Voice call channel via Twilio Programmable Voice.

Each call plays a pre-recorded voice message to the recipient and asks
for a key press as acknowledgement. Call progress comes back through the
status callback webhook, tagged with `?alertId=<id>` for correlation.

═══════════════════════════════════════════════════════════════════════════
CALL SCRIPT (TwiML)
═══════════════════════════════════════════════════════════════════════════

    <Say>   You have an urgent care alert.
    <Play>  {voice_message_url}
    <Say>   Press any key to acknowledge this alert.
    <Gather numDigits=1 timeout=10>
        <Say> Waiting for acknowledgment.
    <Say>   Alert not acknowledged. Goodbye.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode, urlparse

from twilio.twiml.voice_response import VoiceResponse

from backend.app.alerts.channels.base import Channel, TwilioChannel
from backend.app.alerts.phone import mask_phone, validate_e164
from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

VOICE_STATUS_CALLBACK_PATH = "/webhooks/twilio/voice/status"
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]
RING_TIMEOUT_SECONDS = 30
TTS_VOICE = "alice"


@dataclass
class CallResult:
    call_sid: Optional[str]
    status: str
    to: str
    from_number: str
    initiated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "status": self.status,
            "to": mask_phone(self.to),
            "from": mask_phone(self.from_number),
            "initiated_at": self.initiated_at.isoformat(),
        }


@dataclass
class CallStatusEvent:
    """A parsed call progress callback. `status` is Twilio's raw value."""
    call_sid: str
    status: str
    alert_id: Optional[str] = None
    to: str = ""
    from_number: str = ""
    duration: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "status": self.status,
            "alert_id": self.alert_id,
            "to": mask_phone(self.to),
            "duration": self.duration,
            "error_code": self.error_code,
        }


def build_twiml(audio_url: str) -> str:
    """Call script: announce, play the recording, wait for a key press."""
    response = VoiceResponse()
    response.say("You have an urgent care alert.", voice=TTS_VOICE)
    response.play(audio_url)
    response.say("Press any key to acknowledge this alert.", voice=TTS_VOICE)
    gather = response.gather(num_digits=1, timeout=10)
    gather.say("Waiting for acknowledgment.", voice=TTS_VOICE)
    response.say("Alert not acknowledged. Goodbye.", voice=TTS_VOICE)
    return str(response)


def validate_audio_url(audio_url: Optional[str]) -> str:
    if not audio_url or not audio_url.strip():
        raise ValidationError(
            "Voice message URL is required",
            field="audio_url",
            error_code="INVALID_VOICE_MESSAGE_URL",
        )
    parsed = urlparse(audio_url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            "Invalid voice message URL",
            field="audio_url",
            error_code="INVALID_VOICE_MESSAGE_URL",
        )
    return audio_url.strip()


class VoiceGateway(TwilioChannel):
    """Place voice calls through Twilio."""

    channel = Channel.VOICE

    def status_callback_for(self, alert_id: Optional[str]) -> str:
        url = self.callback_url(VOICE_STATUS_CALLBACK_PATH)
        if alert_id:
            url = f"{url}?{urlencode({'alertId': alert_id})}"
        return url

    async def call(
        self,
        to: str,
        audio_url: str,
        alert_id: Optional[str] = None,
    ) -> CallResult:
        """
        Initiate a call that plays `audio_url` to `to`.

        Raises ValidationError before any side effect, ProviderError /
        TransientProviderError when Twilio fails.
        """
        to = validate_e164(to, field="to")
        audio_url = validate_audio_url(audio_url)

        try:
            call = await asyncio.to_thread(
                self.client.calls.create,
                to=to,
                from_=self.from_number,
                twiml=build_twiml(audio_url),
                status_callback=self.status_callback_for(alert_id),
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                timeout=RING_TIMEOUT_SECONDS,
                record=False,
            )
        except Exception as e:
            error = self.map_error(e, to)
            logger.error(
                "Voice call to %s failed: %s", mask_phone(to), error.message,
                extra={"alert_id": alert_id, "channel": self.channel.value},
            )
            raise error from e

        result = CallResult(
            call_sid=getattr(call, "sid", None),
            status=getattr(call, "status", None) or "queued",
            to=to,
            from_number=self.from_number,
        )
        logger.info(
            "Voice call initiated to %s", mask_phone(to),
            extra={"alert_id": alert_id, "call_sid": result.call_sid},
        )
        return result

    def parse_status_callback(
        self,
        form: Mapping[str, Any],
        alert_id: Optional[str] = None,
    ) -> CallStatusEvent:
        """Parse a call status callback. CallSid is required."""
        call_sid = str(form.get("CallSid") or "").strip()
        if not call_sid:
            raise ValidationError(
                "Invalid voice webhook: CallSid is required",
                field="CallSid",
                error_code="INVALID_WEBHOOK_DATA",
                alert_id=alert_id,
            )

        duration: Optional[int] = None
        raw_duration = form.get("CallDuration")
        if raw_duration not in (None, ""):
            try:
                duration = int(raw_duration)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric CallDuration %r", raw_duration)

        event = CallStatusEvent(
            call_sid=call_sid,
            status=str(form.get("CallStatus") or "").strip().lower(),
            alert_id=alert_id,
            to=str(form.get("To") or ""),
            from_number=str(form.get("From") or ""),
            duration=duration,
            error_code=str(form["ErrorCode"]) if form.get("ErrorCode") else None,
            error_message=str(form["ErrorMessage"]) if form.get("ErrorMessage") else None,
            timestamp=datetime.now(timezone.utc),
        )
        logger.info(
            "Voice status %s for call to %s", event.status or "<empty>", mask_phone(event.to),
            extra={"alert_id": alert_id, "call_sid": call_sid, "status": event.status},
        )
        return event
