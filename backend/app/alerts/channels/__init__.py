"""
channels — Twilio-backed delivery channels.

The set is closed:
    sms_gateway    SmsGateway.send(to, body, rate_limit_key) → SmsResult
    voice_gateway  VoiceGateway.call(to, audio_url, alert_id) → CallResult

Both inherit credentials, signature validation and error mapping from
base.TwilioChannel. Retry and escalation policy live in escalation.py.
"""

from backend.app.alerts.channels.base import Channel, TwilioChannel
from backend.app.alerts.channels.sms_gateway import SmsGateway, SmsResult
from backend.app.alerts.channels.voice_gateway import CallResult, CallStatusEvent, VoiceGateway

__all__ = [
    "Channel",
    "TwilioChannel",
    "SmsGateway",
    "SmsResult",
    "VoiceGateway",
    "CallResult",
    "CallStatusEvent",
]
