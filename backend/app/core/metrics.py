"""
Prometheus metrics: HTTP traffic plus the billing counters the engine,
the payment workflow and the cron sweep increment.
"""
import time

from fastapi import Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

subscription_transitions_total = Counter(
    'subscription_transitions_total',
    'Subscription state transitions applied by the auto-switch engine',
    ['action', 'source']
)

auto_switch_check_failures_total = Counter(
    'auto_switch_check_failures_total',
    'Auto-switch checks that failed or timed out',
    ['source']
)

cron_sweep_duration_seconds = Histogram(
    'cron_sweep_duration_seconds',
    'Duration of a scheduled subscription sweep',
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0]
)

payment_requests_total = Counter(
    'payment_requests_total',
    'Payment request state changes',
    ['status']
)


def _endpoint_label(request: Request) -> str:
    # Route template keeps ids out of the label set
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            endpoint = _endpoint_label(request)
            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(time.perf_counter() - started)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    if openmetrics:
        return Response(
            content=generate_latest_openmetrics(),
            media_type="application/openmetrics-text; version=1.0.0; charset=utf-8",
        )
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
