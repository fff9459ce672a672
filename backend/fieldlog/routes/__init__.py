# Routes package init
"""
FieldLog Backend: API Routes Package
======================================

Route Inventory:
    - observations.py: /api/observations...      (CRUD, convert to element)
    - sync.py:         /api/sync/...             (announce, targets, start, exchange)
    - health.py:       GET /health               (store reachability)

Routes stay thin: read the request, call a service, return its result.
Failures are raised as FieldLogError subclasses and rendered by the
exception handlers registered in main.py.
"""
