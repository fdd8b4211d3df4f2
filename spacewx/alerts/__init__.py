"""
alerts — Space-weather event classification and alert dispatch.

Modules:
    models            — enums, dataclasses and static role / preference tables
    classifier        — threshold tables, observation → SpaceWeatherEvent
    duplicate_filter  — type-level cooldown against the alert ledger
    targeting         — per-subscriber relevance (preference, role, latitude)
    dispatcher        — concurrent SMS / email fan-out and ledger writes
    engine            — one poll cycle, end to end
    scheduler         — fixed-rate driver for the engine
    channels          — SMS and email gateways
"""
