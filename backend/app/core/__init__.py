"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    health      — health check aggregation
    database    — async SQLAlchemy engine & sessions
    cache       — shared Redis client
    middleware  — request logging & correlation IDs
"""
