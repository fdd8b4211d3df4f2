"""
spacewx — space-weather hazard alerts over SMS and email.

Sub-packages:
    core/       — config, logging, errors, database, health
    ingestion/  — upstream feed client and geocoding lookup
    alerts/     — classification, duplicate filter, targeting, dispatch, scheduler
    storage/    — subscriber / alert / delivery stores (in-memory and SQL)
    api/        — FastAPI routes
"""

__version__ = "1.0.0"
