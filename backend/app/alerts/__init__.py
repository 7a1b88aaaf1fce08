"""
alerts — Crash alert lifecycle and notification dispatch engine.

Sub-modules:
    models          — Accounts, alerts, delivery records, enums
    store           — Persistence boundary + in-memory store
    sql_store       — SQLAlchemy store (PostgreSQL / SQLite)
    directory       — Contact Directory: phone → account, contact edits
    presence        — Presence Registry: account → live handle
    channels/       — Push (FCM), SMS (Twilio), live (WebSocket) transports
    messages        — Notification wording
    dispatcher      — Per-contact multi-channel delivery
    relay           — Location fan-out to connected contacts
    alert_service   — Alert Lifecycle Manager (state machine + countdown)
    container       — Wiring of the above
"""
