"""Correlation ID and operator identity middleware."""

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

DEFAULT_ACTOR = "api"


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Attach a correlation ID and the calling operator to each request."""

    async def dispatch(self, request: Request, call_next):
        """Process request with correlation ID."""
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        # The CRM authenticates operators; it forwards who acted for the audit trail
        request.state.actor = (request.headers.get("x-operator-id") or DEFAULT_ACTOR)[:255]

        response: Response = await call_next(request)
        response.headers["x-correlation-id"] = correlation_id
        return response


def get_actor(request: Request) -> str:
    """Operator recorded on audit events for this request."""
    return getattr(request.state, "actor", DEFAULT_ACTOR)
