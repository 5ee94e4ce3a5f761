"""
test_channels.py — Twilio SMS and voice gateways.

The Twilio REST client is replaced by a MagicMock; nothing leaves the
process.

Covers:
    • Construction and configuration errors
    • SMS validation ordering, rate limiting, request shape
    • Twilio error code mapping
    • Voice call request shape, TwiML script, callback correlation
    • Status callback parsing and signature validation

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator

from backend.app.alerts.channels.base import Channel, normalise_base_url
from backend.app.alerts.channels.sms_gateway import (
    SMS_MAX_LENGTH,
    SmsGateway,
)
from backend.app.alerts.channels.voice_gateway import (
    RING_TIMEOUT_SECONDS,
    STATUS_CALLBACK_EVENTS,
    VoiceGateway,
    build_twiml,
)
from backend.app.alerts.rate_limiter import RateLimiter
from backend.app.core.config import settings
from backend.app.core.errors import (
    ConfigurationError,
    InvalidNumberError,
    OptedOutError,
    ProviderError,
    RateLimitExceeded,
    TransientProviderError,
    UnverifiedNumberError,
    ValidationError,
)
from conftest import CAREGIVER_PHONE, FROM_NUMBER, VOICE_URL

AUTH_TOKEN = "test-auth-token"
BASE_URL = "https://alerts.example.com"

CREDENTIALS = dict(
    account_sid="AC" + "1" * 32,
    auth_token=AUTH_TOKEN,
    from_number=FROM_NUMBER,
    webhook_base_url=BASE_URL,
)


def _twilio_client(sid="SM" + "a" * 32, status="queued"):
    client = MagicMock()
    client.messages.create.return_value = SimpleNamespace(sid=sid, status=status)
    client.calls.create.return_value = SimpleNamespace(sid="CA" + "b" * 32, status="queued")
    return client


def _sms_gateway(client=None, limit=100, clock=None):
    limiter = RateLimiter(
        prefix="sms:ratelimit", limit=limit, window_seconds=3600,
        use_redis=False, now=clock,
    )
    return SmsGateway(rate_limiter=limiter, client=client or _twilio_client(), **CREDENTIALS)


def _voice_gateway(client=None):
    return VoiceGateway(client=client or _twilio_client(), **CREDENTIALS)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Construction
# ═══════════════════════════════════════════════════════════════════════════

class TestConstruction:

    def test_channels_are_fixed(self):
        assert {c.value for c in Channel} == {"sms", "voice"}
        assert _sms_gateway().channel is Channel.SMS
        assert _voice_gateway().channel is Channel.VOICE

    def test_missing_credentials_raise_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc:
            VoiceGateway(
                account_sid="", auth_token="", from_number="",
                webhook_base_url=BASE_URL, client=MagicMock(),
            )
        assert "TWILIO_AUTH_TOKEN" in exc.value.details["missing"] or \
            "TWILIO_ACCOUNT_SID" in exc.value.details["missing"]

    def test_callback_url_normalises_slashes(self):
        gateway = VoiceGateway(
            client=MagicMock(),
            **{**CREDENTIALS, "webhook_base_url": " https://alerts.example.com/ "},
        )
        assert gateway.callback_url("/webhooks/x") == "https://alerts.example.com/webhooks/x"

    def test_normalise_base_url(self):
        assert normalise_base_url("https://a.example.com///") == "https://a.example.com"

    def test_rest_client_requests_are_time_bounded(self):
        gateway = VoiceGateway(**CREDENTIALS, http_timeout=12.5)
        assert isinstance(gateway.client.http_client, TwilioHttpClient)
        assert gateway.client.http_client.timeout == 12.5

    def test_default_http_timeout_follows_voice_call_timeout(self):
        gateway = VoiceGateway(**CREDENTIALS)
        assert gateway.http_timeout == settings.VOICE_CALL_TIMEOUT_SECONDS
        assert gateway.client.http_client.timeout == settings.VOICE_CALL_TIMEOUT_SECONDS


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: SMS sending
# ═══════════════════════════════════════════════════════════════════════════

class TestSmsSend:

    def test_sends_with_status_callback(self):
        client = _twilio_client()
        gateway = _sms_gateway(client)

        result = asyncio.run(gateway.send(CAREGIVER_PHONE, "Backup coordinator is calling now."))

        client.messages.create.assert_called_once_with(
            to=CAREGIVER_PHONE,
            from_=FROM_NUMBER,
            body="Backup coordinator is calling now.",
            status_callback=f"{BASE_URL}/webhooks/twilio/sms/status",
        )
        assert result.message_sid == "SM" + "a" * 32
        assert result.status == "queued"
        assert result.to == CAREGIVER_PHONE

    def test_result_dict_masks_numbers(self):
        result = asyncio.run(_sms_gateway().send(CAREGIVER_PHONE, "hello"))
        data = result.to_dict()
        assert data["to"].endswith("0001")
        assert CAREGIVER_PHONE not in data.values()
        assert data["body_length"] == 5

    def test_invalid_number_rejected_before_rate_limit(self):
        client = _twilio_client()
        gateway = _sms_gateway(client)

        with pytest.raises(ValidationError) as exc:
            asyncio.run(gateway.send("555-1234", "hello"))

        assert exc.value.error_code == "INVALID_PHONE_NUMBER"
        assert asyncio.run(gateway.get_sms_count("555-1234")) == 0
        client.messages.create.assert_not_called()

    def test_empty_body_rejected(self):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(_sms_gateway().send(CAREGIVER_PHONE, "   "))
        assert exc.value.error_code == "INVALID_MESSAGE_BODY"

    def test_body_too_long_rejected(self):
        gateway = _sms_gateway()
        with pytest.raises(ValidationError) as exc:
            asyncio.run(gateway.send(CAREGIVER_PHONE, "x" * (SMS_MAX_LENGTH + 1)))
        assert exc.value.error_code == "MESSAGE_TOO_LONG"
        assert asyncio.run(gateway.get_sms_count(CAREGIVER_PHONE)) == 0

    def test_body_at_max_length_accepted(self):
        result = asyncio.run(_sms_gateway().send(CAREGIVER_PHONE, "x" * SMS_MAX_LENGTH))
        assert result.message_sid


class TestSmsRateLimit:

    def test_rate_limit_exceeded_after_limit(self):
        client = _twilio_client()
        gateway = _sms_gateway(client, limit=2)

        async def run():
            await gateway.send(CAREGIVER_PHONE, "one")
            await gateway.send(CAREGIVER_PHONE, "two")
            await gateway.send(CAREGIVER_PHONE, "three")

        with pytest.raises(RateLimitExceeded) as exc:
            asyncio.run(run())

        assert exc.value.status_code == 429
        assert exc.value.limit == 2
        assert exc.value.current == 3
        assert client.messages.create.call_count == 2

    def test_rate_limit_key_overrides_destination(self):
        gateway = _sms_gateway(limit=1)

        async def run():
            await gateway.send("+15550000011", "one", rate_limit_key="user-7")
            await gateway.send("+15550000012", "two", rate_limit_key="user-7")

        with pytest.raises(RateLimitExceeded) as exc:
            asyncio.run(run())
        assert exc.value.details["identity"] == "user-7"

    def test_count_and_reset(self):
        gateway = _sms_gateway(limit=1)

        async def run():
            await gateway.send(CAREGIVER_PHONE, "one", rate_limit_key="user-7")
            before = await gateway.get_sms_count("user-7")
            await gateway.reset_rate_limit("user-7")
            after = await gateway.get_sms_count("user-7")
            await gateway.send(CAREGIVER_PHONE, "two", rate_limit_key="user-7")
            return before, after

        assert asyncio.run(run()) == (1, 0)


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Twilio error mapping
# ═══════════════════════════════════════════════════════════════════════════

def _rest_error(status, code, msg="boom"):
    return TwilioRestException(status, "/2010-04-01/Messages.json", msg=msg, code=code)


class TestErrorMapping:

    @pytest.mark.parametrize("code, expected", [
        (21211, InvalidNumberError),
        (21608, UnverifiedNumberError),
        (21610, OptedOutError),
    ])
    def test_known_codes(self, code, expected):
        client = _twilio_client()
        client.messages.create.side_effect = _rest_error(400, code)

        with pytest.raises(expected) as exc:
            asyncio.run(_sms_gateway(client).send(CAREGIVER_PHONE, "hello"))

        assert exc.value.provider_code == code
        assert exc.value.channel == "sms"

    def test_server_error_is_transient(self):
        client = _twilio_client()
        client.messages.create.side_effect = _rest_error(503, 20500)

        with pytest.raises(TransientProviderError):
            asyncio.run(_sms_gateway(client).send(CAREGIVER_PHONE, "hello"))

    def test_other_rest_error_is_provider_error(self):
        client = _twilio_client()
        client.messages.create.side_effect = _rest_error(400, 21602, "Message body is required")

        with pytest.raises(ProviderError) as exc:
            asyncio.run(_sms_gateway(client).send(CAREGIVER_PHONE, "hello"))

        assert type(exc.value) is ProviderError
        assert "Message body is required" in exc.value.message

    def test_network_error_is_transient(self):
        client = _twilio_client()
        client.calls.create.side_effect = ConnectionError("connection reset")

        with pytest.raises(TransientProviderError) as exc:
            asyncio.run(_voice_gateway(client).call(CAREGIVER_PHONE, VOICE_URL))
        assert exc.value.channel == "voice"

    def test_mapped_error_masks_number(self):
        error = _voice_gateway().map_error(_rest_error(400, 21211), CAREGIVER_PHONE)
        assert error.details["to"] == "+*******0001"


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Voice calls
# ═══════════════════════════════════════════════════════════════════════════

class TestVoiceCall:

    def test_call_request_shape(self):
        client = _twilio_client()
        result = asyncio.run(_voice_gateway(client).call(CAREGIVER_PHONE, VOICE_URL, alert_id="alert-1"))

        kwargs = client.calls.create.call_args.kwargs
        assert kwargs["to"] == CAREGIVER_PHONE
        assert kwargs["from_"] == FROM_NUMBER
        assert kwargs["status_callback"] == f"{BASE_URL}/webhooks/twilio/voice/status?alertId=alert-1"
        assert kwargs["status_callback_event"] == STATUS_CALLBACK_EVENTS
        assert kwargs["status_callback_method"] == "POST"
        assert kwargs["timeout"] == RING_TIMEOUT_SECONDS
        assert kwargs["record"] is False
        assert VOICE_URL in kwargs["twiml"]
        assert result.call_sid == "CA" + "b" * 32

    def test_callback_without_alert_id(self):
        url = _voice_gateway().status_callback_for(None)
        assert url == f"{BASE_URL}/webhooks/twilio/voice/status"

    def test_invalid_audio_url_rejected_before_call(self):
        client = _twilio_client()
        with pytest.raises(ValidationError) as exc:
            asyncio.run(_voice_gateway(client).call(CAREGIVER_PHONE, "ftp://files/a.mp3"))
        assert exc.value.error_code == "INVALID_VOICE_MESSAGE_URL"
        client.calls.create.assert_not_called()

    def test_missing_audio_url_rejected(self):
        with pytest.raises(ValidationError):
            asyncio.run(_voice_gateway().call(CAREGIVER_PHONE, ""))

    def test_invalid_number_rejected_before_call(self):
        client = _twilio_client()
        with pytest.raises(ValidationError):
            asyncio.run(_voice_gateway(client).call("4155552671", VOICE_URL))
        client.calls.create.assert_not_called()

    def test_missing_sid_returns_none(self):
        client = _twilio_client()
        client.calls.create.return_value = SimpleNamespace(sid=None, status=None)
        result = asyncio.run(_voice_gateway(client).call(CAREGIVER_PHONE, VOICE_URL))
        assert result.call_sid is None
        assert result.status == "queued"


class TestTwiml:

    def test_script_order(self):
        twiml = build_twiml(VOICE_URL)
        assert twiml.index("urgent care alert") < twiml.index(VOICE_URL)
        assert twiml.index(VOICE_URL) < twiml.index("<Gather")
        assert twiml.index("<Gather") < twiml.index("Goodbye")

    def test_gather_single_digit(self):
        twiml = build_twiml(VOICE_URL)
        assert 'numDigits="1"' in twiml
        assert 'timeout="10"' in twiml


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Status callbacks and signatures
# ═══════════════════════════════════════════════════════════════════════════

class TestStatusCallbacks:

    def test_voice_callback_parsed(self):
        event = _voice_gateway().parse_status_callback(
            {"CallSid": "CA1", "CallStatus": "No-Answer", "CallDuration": "0", "To": CAREGIVER_PHONE},
            alert_id="alert-1",
        )
        assert event.call_sid == "CA1"
        assert event.status == "no-answer"
        assert event.duration == 0
        assert event.alert_id == "alert-1"

    def test_voice_callback_requires_call_sid(self):
        with pytest.raises(ValidationError) as exc:
            _voice_gateway().parse_status_callback({"CallStatus": "completed"})
        assert exc.value.error_code == "INVALID_WEBHOOK_DATA"

    def test_voice_callback_non_numeric_duration(self):
        event = _voice_gateway().parse_status_callback({"CallSid": "CA1", "CallDuration": "abc"})
        assert event.duration is None

    def test_sms_callback_accepts_legacy_fields(self):
        event = _sms_gateway().parse_status_callback({"SmsSid": "SM1", "SmsStatus": "delivered"})
        assert event.message_sid == "SM1"
        assert event.status == "delivered"

    def test_sms_callback_requires_status(self):
        with pytest.raises(ValidationError):
            _sms_gateway().parse_status_callback({"MessageSid": "SM1"})

    def test_sms_callback_error_code(self):
        event = _sms_gateway().parse_status_callback(
            {"MessageSid": "SM1", "MessageStatus": "undelivered", "ErrorCode": 30003}
        )
        assert event.error_code == "30003"


class TestSignatureValidation:

    URL = f"{BASE_URL}/webhooks/twilio/voice/status?alertId=alert-1"
    PARAMS = {"CallSid": "CA1", "CallStatus": "completed"}

    def test_valid_signature(self):
        signature = RequestValidator(AUTH_TOKEN).compute_signature(self.URL, self.PARAMS)
        assert _voice_gateway().validate_signature(self.URL, self.PARAMS, signature)

    def test_tampered_params_rejected(self):
        signature = RequestValidator(AUTH_TOKEN).compute_signature(self.URL, self.PARAMS)
        tampered = {**self.PARAMS, "CallStatus": "busy"}
        assert not _voice_gateway().validate_signature(self.URL, tampered, signature)

    def test_wrong_token_rejected(self):
        signature = RequestValidator("other-token").compute_signature(self.URL, self.PARAMS)
        assert not _voice_gateway().validate_signature(self.URL, self.PARAMS, signature)

    def test_missing_signature_rejected(self):
        assert not _voice_gateway().validate_signature(self.URL, self.PARAMS, None)
        assert not _voice_gateway().validate_signature(self.URL, self.PARAMS, "")
