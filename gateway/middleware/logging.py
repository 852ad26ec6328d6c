"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and records the
request metrics exposed on /metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from gateway.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.
    
    Adds: user_id, route, duration_ms, status to every log.
    """
    
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        
        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )
        
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                user_id=getattr(request.state, "user_id", None),
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            raise
        
        duration = time.time() - start_time
        # Route template keeps metric label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        track_request(request.method, endpoint, response.status_code, duration)
        
        # Set by the auth dependency once the caller is resolved
        request_logger.info(
            "request_completed",
            user_id=getattr(request.state, "user_id", None),
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        
        return response
