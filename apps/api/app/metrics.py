from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_deal_stage_transitions_total = Counter(
    "crm_deal_stage_transitions_total",
    "Deal stage transition attempts by outcome",
    ["outcome"],
)

crm_deal_stage_transition_duration_seconds = Histogram(
    "crm_deal_stage_transition_duration_seconds",
    "Deal stage transition duration in seconds",
)

crm_deal_stage_drift_seconds = Histogram(
    "crm_deal_stage_drift_seconds",
    "Absolute difference between client and stored deal version timestamps",
    buckets=(0.001, 0.01, 0.1, 0.5, 1.0, 5.0, 60.0, 600.0),
)

crm_domain_events_total = Counter(
    "crm_domain_events_total",
    "Domain events published on the in-process bus",
    ["event_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(outcome: str, duration: float, drift_seconds: float | None = None) -> None:
    crm_deal_stage_transitions_total.labels(outcome=outcome).inc()
    crm_deal_stage_transition_duration_seconds.observe(duration)
    if drift_seconds is not None:
        crm_deal_stage_drift_seconds.observe(drift_seconds)


def observe_domain_event(event_type: str) -> None:
    crm_domain_events_total.labels(event_type=event_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
