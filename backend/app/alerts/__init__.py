"""
alerts — Organization alert fan-out and scheduled alert execution.

Sub-modules:
    models          — Data structures shared across the system
    store           — Document-store contract + in-memory store
    sql_store       — SQLAlchemy-backed store
    preferences     — Per-group notification preferences
    followers       — Follower resolution, follow / unfollow
    eligibility     — Group-preference filtering (opt-out-by-default)
    tokens          — Delivery-token resolution and deduplication
    dispatcher      — Notification payloads and isolated per-token sends
    channels/       — Push delivery backends (FCM, simulation)
    alert_service   — Alert trigger and status writer
    recurrence      — Next-occurrence arithmetic
    scheduler       — Scheduled alert executor and periodic runner
    admin           — Token management, diagnostics, follower repair
"""
