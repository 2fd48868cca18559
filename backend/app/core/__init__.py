"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging with job/request context
    errors          — exception hierarchy & handlers
    health          — health check aggregation
    middleware      — request id, timing and access logging
    database        — async SQLAlchemy engine and sessions
    redis_client    — async Redis client lifecycle
"""
