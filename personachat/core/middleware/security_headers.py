import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from personachat.core.logging import get_request_id


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), interest-cohort=()",
}

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"

BLOCKED_PATH_PREFIXES = (
    "/.env",
    "/.git",
    "/config",
    "/logs",
    "/admin",
    "/phpmyadmin",
    "/wp-admin",
    "/wp-login.php",
)


def is_blocked_path(path: str) -> bool:
    lowered = path.lower()
    return any(lowered == prefix or lowered.startswith(prefix + "/") or lowered.startswith(prefix + ".")
               for prefix in BLOCKED_PATH_PREFIXES)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Harden every response and refuse probes for well-known sensitive paths."""

    async def dispatch(self, request, call_next):
        if is_blocked_path(request.url.path):
            logging.getLogger("personachat").warning(
                "security.blocked_path",
                extra={"request_id": get_request_id(), "path": request.url.path},
            )
            response = JSONResponse(
                status_code=404,
                content={"success": False, "error": "Not found", "code": "not_found", "request_id": get_request_id()},
            )
        else:
            response = await call_next(request)

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https":
            response.headers["Strict-Transport-Security"] = HSTS_VALUE
        # API responses carry per-user state
        response.headers.setdefault("Cache-Control", "no-store")
        return response
