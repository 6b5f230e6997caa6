"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request logging & correlation IDs
    health      — health checks & push diagnostics
    database    — async SQLAlchemy engine / sessions
    cache       — processed-alert ledger (Redis)
"""
