"""
alerts — Care alert escalation core.

Sub-modules:
    channels/      — Twilio SMS and voice gateways
    escalation     — EscalationScheduler: reminders, then backup escalation
    webhooks       — WebhookReconciler: provider callbacks → alert status
    rate_limiter   — Fixed-window per-identity limiter (Redis / in-process)
    repository     — Conditional queries over care_alerts
    models         — ORM tables and status enums
    phone          — E.164 validation and masking
"""
