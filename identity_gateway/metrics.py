"""Prometheus metrics for the identity gateway.

Each service instance owns its own CollectorRegistry, so several services
(e.g. in tests) never collide on metric names.

Metrics goals:
- gauges are read projections of service state, evaluated at scrape time
- low-cardinality labels only (never principals or anchors)
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST
from fastapi import Request
from fastapi.responses import Response

METRIC_PREFIX = "identity_gateway"
TEMP_KEYS_COUNT = f"{METRIC_PREFIX}_temp_keys_count"
ANCHORS_COUNT = f"{METRIC_PREFIX}_anchors_count"
INFLIGHT_CHALLENGES = f"{METRIC_PREFIX}_inflight_challenges"
REGISTRATIONS_TOTAL = f"{METRIC_PREFIX}_registrations_total"


class GatewayMetrics:
    def __init__(
        self,
        temp_keys_count: Callable[[], int],
        anchors_count: Callable[[], int],
        inflight_challenges: Optional[Callable[[], int]] = None,
    ):
        self.registry = CollectorRegistry()

        self.temp_keys = Gauge(
            TEMP_KEYS_COUNT,
            "Number of temporary keys currently stored",
            registry=self.registry,
        )
        self.temp_keys.set_function(lambda: float(temp_keys_count()))

        self.anchors = Gauge(
            ANCHORS_COUNT,
            "Number of registered anchors",
            registry=self.registry,
        )
        self.anchors.set_function(lambda: float(anchors_count()))

        if inflight_challenges is not None:
            self.challenges = Gauge(
                INFLIGHT_CHALLENGES,
                "Number of pending captcha challenges",
                registry=self.registry,
            )
            self.challenges.set_function(lambda: float(inflight_challenges()))

        self.registrations = Counter(
            REGISTRATIONS_TOTAL,
            "Registration attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.http_requests = Counter(
            f"{METRIC_PREFIX}_http_requests_total",
            "Total HTTP requests received",
            ["method", "route", "status"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            f"{METRIC_PREFIX}_http_request_latency_seconds",
            "HTTP request latency in seconds",
            ["method", "route"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )

    def record_registration(self, outcome: str) -> None:
        self.registrations.labels(outcome=str(outcome)).inc()

    def record_http(self, method: str, route: str, status: int, started: float) -> None:
        self.http_requests.labels(method=method, route=route, status=str(status)).inc()
        self.http_latency.labels(method=method, route=route).observe(time.perf_counter() - started)

    def sample(self, name: str, **labels: str) -> Optional[float]:
        """Current value of a sample, or None if it is not exported."""
        return self.registry.get_sample_value(name, labels or None)

    def render(self) -> bytes:
        return generate_latest(self.registry)


def instrument_fastapi(app, metrics: GatewayMetrics, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            metrics.record_http(request.method, route_path, status, started)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)
