"""
HTTP request logging middleware.

Binds a request id plus the order, owner or cron job the request targets,
so every pipeline and scheduler log line emitted while serving it can be
traced back to the call. Health probes are logged at debug level.
"""

import re
import time
import uuid
from typing import Dict

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.stdlib.get_logger("http")

_ORDER_PATH = re.compile(r"^/dca/orders/(?P<order_id>[^/]+)")
_OWNER_PATH = re.compile(r"^/dca/users/(?P<owner>[^/]+)/orders")
_CRON_PATH = re.compile(r"^/cron/(?P<job>[^/]+)")
_QUIET_PATHS = frozenset({"/healthz"})


def request_context(path: str, request_id: str) -> Dict[str, str]:
    """Log fields identifying what ``path`` acts on."""
    match = _ORDER_PATH.match(path)
    if match:
        return {"trigger": "api", "order_id": match.group("order_id")}
    match = _OWNER_PATH.match(path)
    if match:
        return {"trigger": "api", "owner_address": match.group("owner").lower()}
    match = _CRON_PATH.match(path)
    if match:
        # One sweep or reconcile run per cron request
        return {"trigger": "cron", "cron_job": match.group("job"), "run_id": f"{match.group('job')}-{request_id}"}
    return {"trigger": "api"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log HTTP requests with timing, status and the order or job they touch."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        path = request.url.path
        context = request_context(path, request_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, **context)

        start = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["x-request-id"] = request_id
            if "run_id" in context:
                response.headers["x-run-id"] = context["run_id"]
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 1)

            if status_code >= 500:
                log = logger.error
            elif status_code >= 400:
                log = logger.warning
            elif path in _QUIET_PATHS:
                log = logger.debug
            else:
                log = logger.info

            log(
                "http_request",
                method=request.method,
                path=path,
                status=status_code,
                duration_ms=duration_ms,
                client=request.client.host if request.client else None,
            )
