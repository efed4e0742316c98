"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and records request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.routes.metrics import track_request

logger = structlog.get_logger()


def _endpoint(request: Request) -> str:
    # Route template keeps metric labels bounded (no conversation ids)
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_logger = logger.bind(method=request.method)

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            endpoint = _endpoint(request)
            request_logger.error(
                "request_failed",
                route=endpoint,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, endpoint, 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000
        endpoint = _endpoint(request)

        request_logger.info(
            "request_completed",
            route=endpoint,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        track_request(request.method, endpoint, response.status_code, duration_ms / 1000)

        return response
