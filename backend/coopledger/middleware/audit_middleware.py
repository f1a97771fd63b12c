"""Middleware that logs read-access events for sensitive endpoints.

Intercepts successful GET requests whose path matches one of the
configured patterns and fires a ``READ_ACCESS`` audit event.  The event is
written asynchronously (fire-and-forget) so it does not slow down the
response.

User information is read from ``request.state._audit_user``, which is
set by ``get_current_user()`` in ``middleware/auth.py``.  A pattern may
capture ``cooperative_id`` to attribute the read to a tenant.
"""

from __future__ import annotations

import logging
import re

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from coopledger.services.audit_service import (
    AuditEvent,
    AuditEventCategory,
    AuditWriter,
)

logger = logging.getLogger(__name__)


class AuditReadAccessMiddleware(BaseHTTPMiddleware):
    """Log read-access events for balance and report views."""

    def __init__(
        self,
        app,
        writer: AuditWriter,
        patterns: list[str],
    ) -> None:
        super().__init__(app)
        self.writer = writer
        self.patterns = [re.compile(p) for p in patterns]

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.method != "GET":
            return await call_next(request)

        path = request.url.path
        match = next((m for m in (p.match(path) for p in self.patterns) if m), None)
        if match is None:
            return await call_next(request)

        response = await call_next(request)

        # Only log successful responses (2xx)
        if 200 <= response.status_code < 300:
            user_info = getattr(request.state, "_audit_user", None)
            self.writer.fire_and_forget(AuditEvent.create(
                f"read.{path.strip('/').replace('/', '.')}",
                category=AuditEventCategory.READ_ACCESS,
                cooperative_id=match.groupdict().get("cooperative_id"),
                user_id=str(user_info["user_id"]) if user_info else None,
                username=user_info.get("username") if user_info else None,
                resource_type="endpoint",
                resource_id=path,
                details={
                    "query_params": dict(request.query_params),
                    "status_code": response.status_code,
                },
                ip_address=request.client.host if request.client else None,
            ))

        return response
