"""
FieldLog Backend: Application Package
=======================================

What: Application-logic layer of an offline-first field data collection tool.
Who:  Imported by uvicorn (``fieldlog.main:app``), alembic and pytest.

Architecture Note:
    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (Observation, Sync)      │  ← validation, migration, sessions
    ├─────────────────────────────────────┤
    │   Store / Replication Engine        │  ← versioned persistence, peers
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Routes never touch the store directly; services receive the store and
    the replication engine at construction.
"""

__version__ = "1.0.0"
