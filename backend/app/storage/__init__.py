"""
storage — Persistent store for templates, scheduled notifications,
delivery logs and campaigns.

Sub-modules:
    base        — NotificationStore contract (conditional updates, atomic counters)
    memory      — In-process store for development and tests
    orm         — SQLAlchemy table mappings
    sql_store   — SQLAlchemy 2.0 async implementation
"""
