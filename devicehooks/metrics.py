from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQS = Counter(
    "devicehooks_requests_total",
    "Requests",
    ["method", "path", "status"],
)
LAT = Histogram(
    "devicehooks_latency_seconds",
    "Latency",
    ["method", "path"],
)
DELIVERIES = Counter(
    "devicehooks_deliveries_total",
    "Webhook deliveries attempted by the relay",
    ["outcome"],
)


def route_template(request) -> str:
    """Matched route path (``/api/webhooks/{device_id}``) to keep label cardinality bounded."""

    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
