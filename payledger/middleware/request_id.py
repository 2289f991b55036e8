"""Request tracing — X-Request-ID on every response plus one access line per request.

Provider webhooks arrive without an ID, so most deliveries get a fresh UUID4;
the webhook endpoints add the provider's event id via ``bind_webhook_event``.
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("payledger.access")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
# "<provider>:<event type>:<event id>" while a webhook is being applied
webhook_event_var: ContextVar[str] = ContextVar("webhook_event", default="")


@contextmanager
def bind_webhook_event(provider: str, event_type: Optional[str], event_id: Optional[str]) -> Iterator[None]:
    token = webhook_event_var.set(f"{provider}:{event_type or '?'}:{event_id or '?'}")
    try:
        yield
    finally:
        webhook_event_var.reset(token)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Honor an incoming X-Request-ID or mint one, and log method/path/status/duration."""

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        token = request_id_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                "%s %s → %d (%.1fms)",
                request.method, request.url.path, response.status_code,
                (time.perf_counter() - started) * 1000,
            )
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
