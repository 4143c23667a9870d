from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _context_fields(request: Request) -> dict[str, str | None]:
    context = getattr(request.state, "context", None)
    if context is None:
        return {"actor_user_id": None, "tenant_id": None}
    return {"actor_user_id": context.user_id, "tenant_id": context.tenant_hint}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    **_context_fields(request),
                },
            )
            raise

        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(
            method=method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        logger.log(
            logging.WARNING if response.status_code >= 500 else logging.INFO,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **_context_fields(request),
            },
        )
        return response
