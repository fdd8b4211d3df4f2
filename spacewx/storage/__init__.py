"""
storage — Subscriber, alert and delivery stores.

Modules:
    base    — abstract store contracts used by the engine
    memory  — in-process backends (tests, local runs)
    sql     — SQLAlchemy backends with a unique (type, bucket) alert key
"""
