"""
Observability: Prometheus metrics.
- HTTP request count/latency per endpoint.
- Realtime: connected users gauge, notification delivery outcomes.
- Served at /metrics.
"""
import time

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

_metrics_registry: CollectorRegistry | None = None
_request_count: Counter | None = None
_request_latency: Histogram | None = None
_connected_users: Gauge | None = None
_notification_count: Counter | None = None


def setup_metrics(service_name: str) -> None:
    global _metrics_registry, _request_count, _request_latency, _connected_users, _notification_count
    _metrics_registry = CollectorRegistry()
    _request_count = Counter(
        "http_requests_total",
        "Total HTTP requests",
        ["method", "endpoint", "status"],
        registry=_metrics_registry,
    )
    _request_latency = Histogram(
        "http_request_duration_seconds",
        "HTTP request latency",
        ["method", "endpoint"],
        registry=_metrics_registry,
    )
    _connected_users = Gauge(
        "realtime_connected_users",
        "Users currently holding a realtime connection",
        registry=_metrics_registry,
    )
    _notification_count = Counter(
        "notifications_dispatched_total",
        "Dispatched domain events by outcome",
        ["outcome"],
        registry=_metrics_registry,
    )


def get_metrics_content() -> bytes:
    if _metrics_registry is None:
        return b""
    return generate_latest(_metrics_registry)


def set_connected_users(count: int) -> None:
    if _connected_users is not None:
        _connected_users.set(count)


def record_notification(outcome: str) -> None:
    if _notification_count is not None:
        _notification_count.labels(outcome=outcome).inc()


def instrument_fastapi(app, service_name: str) -> None:
    setup_metrics(service_name)

    from fastapi import Response
    from starlette.middleware.base import BaseHTTPMiddleware

    class PrometheusMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request, call_next):
            if request.url.path in ("/metrics", "/health"):
                return await call_next(request)
            start = time.perf_counter()
            response = await call_next(request)
            duration = time.perf_counter() - start
            c, h = _request_count, _request_latency
            if c and h:
                route = request.scope.get("route")
                endpoint = getattr(route, "path", None) or request.url.path or "/"
                c.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
                h.labels(method=request.method, endpoint=endpoint).observe(duration)
            return response

    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics():
        return Response(content=get_metrics_content(), media_type="text/plain; charset=utf-8")
