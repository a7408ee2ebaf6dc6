import time
from starlette.middleware.base import BaseHTTPMiddleware

from personachat.core.logging import latency_bucket_ms
from personachat.core.metrics import http_requests_total, http_request_latency_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests by route and status, plus a coarse latency bucket."""

    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        _record_request_metric(request, response, (time.perf_counter() - start) * 1000)
        return response


def _record_request_metric(request, response, duration_ms: float) -> None:
    try:
        path = normalize_path(request.url.path)
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": path,
            "status": str(getattr(response, "status_code", None) or 0),
        })
        http_request_latency_total.inc(labels={"path": path, "bucket": latency_bucket_ms(duration_ms)})
    except Exception:
        # metrics must never fail a request
        return
