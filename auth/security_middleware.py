"""
Security middleware for FastAPI:
- Security headers (HSTS, X-Frame-Options, etc.)
- Per-IP rate limiting and block list enforcement
- Request audit logging
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import logging
import time

from auth.rate_limiter import RateLimiter, rate_limiter as default_rate_limiter

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "geolocation=(), "
            "microphone=(), "
            "camera=(), "
            "payment=(), "
            "usb=()"
        )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-IP rate limiting.

    Blocked IPs get 429 everywhere. Login counts against the "auth" window,
    other /api/ paths against "api", the rest against "general".
    """

    def __init__(self, app, limiter: RateLimiter = None):
        super().__init__(app)
        self.limiter = limiter or default_rate_limiter

    @staticmethod
    def window_for(path: str) -> str:
        if path.startswith("/api/auth/login"):
            return "auth"
        if path.startswith("/api/"):
            return "api"
        return "general"

    async def dispatch(self, request: Request, call_next):
        ip = client_ip(request)
        window = self.window_for(request.url.path)

        allowed, remaining, reset_at = self.limiter.hit(ip, window)
        limit = self.limiter.windows.get(window, {}).get("max", 0)

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP {ip} on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={
                    "Retry-After": str(max(int(reset_at - time.time()), 1)),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(reset_at)),
                },
            )

        response = await call_next(request)

        if response.status_code < 400 and self.limiter.skips_successful(window):
            self.limiter.refund(ip, window)

        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(reset_at))

        return response


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with status and duration.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        ip = client_ip(request)

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} | "
            f"IP: {ip} | {duration_ms:.1f}ms"
        )

        return response
