from fastapi import Request
import time
import logging
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response as FastAPIResponse

logger = logging.getLogger(__name__)

# HTTP
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

# Pipeline
stage_runs = Counter(
    'pipeline_stage_runs_total',
    'Pipeline stage invocations by outcome (success, invalid, error, unauthorized)',
    ['stage', 'outcome']
)

stage_duration = Histogram(
    'pipeline_stage_duration_seconds',
    'Wall time of a stage handler',
    ['stage'],
    buckets=(0.5, 1, 2.5, 5, 10, 20, 30, 45, 60, 90)
)

pages_audited = Counter(
    'pipeline_pages_audited_total',
    'Pages handled by the audit stage by outcome (audited, skipped, failed)',
    ['outcome']
)


def endpoint_label(scope) -> str:
    """Route template (``/jobs/{job_id}``) rather than the raw path, to bound label cardinality."""
    route = scope.get("route")
    return getattr(route, "path_format", None) or getattr(route, "path", None) or scope.get("path", "")


class MonitoringMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        start_time = time.time()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                duration = time.time() - start_time
                status_code = message["status"]
                endpoint = endpoint_label(scope)

                request_count.labels(method=request.method, endpoint=endpoint, status=status_code).inc()
                request_duration.labels(method=request.method, endpoint=endpoint).observe(duration)

                log = logger.warning if status_code >= 500 else logger.info
                log(f"{request.method} {request.url.path} - {status_code} - {duration:.3f}s")

            await send(message)

        await self.app(scope, receive, send_wrapper)


def setup_monitoring(app):
    """Setup monitoring middleware and the /metrics endpoint"""

    app.add_middleware(MonitoringMiddleware)

    @app.get("/metrics", include_in_schema=False)
    def get_metrics():
        """Prometheus metrics endpoint"""
        return FastAPIResponse(
            generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )
