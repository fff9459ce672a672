# Middleware package init
"""
FieldLog Backend: Middleware Package
======================================

Cross-cutting concerns applied to every request.

Middleware Chain:
    Request → [Request ID] → [Logging] → [CORS] → Route Handler

    Responses travel back through the same chain in reverse, so the request
    ID is already set when the logging middleware writes the access line,
    and the X-Request-ID header is added last.

Sync streams (GET /api/sync/start) pass through unbuffered; the access line
is written when the response headers are sent, not when the stream ends.
"""
