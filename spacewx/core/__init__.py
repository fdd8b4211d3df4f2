"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — JSON and pretty formatters, log scopes, phone masking
    errors          — exception hierarchy & handlers
    middleware      — request logging & correlation ids
    database        — async SQLAlchemy engine and sessions
    health          — component probes and the aggregated report
"""
