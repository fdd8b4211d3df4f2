"""
ingestion — Network collaborators that feed the alert engine.

Modules:
    feed_client  — five upstream space-weather feeds → Observations
    geocoding    — location text → latitude (Nominatim)
"""
