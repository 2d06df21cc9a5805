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

price_tier_replacements_total = Counter(
    "price_tier_replacements_total",
    "Total atomic price tier replacements by outcome",
    ["outcome"],
)

price_tier_replacement_duration_seconds = Histogram(
    "price_tier_replacement_duration_seconds",
    "Atomic price tier replacement duration in seconds",
)

price_tier_validation_failures_total = Counter(
    "price_tier_validation_failures_total",
    "Total price tier rule violations by rule and detecting layer",
    ["rule", "source"],
)

price_quotes_total = Counter(
    "price_quotes_total",
    "Total price quotes by pricing source",
    ["source"],
)

pricing_mode_changes_total = Counter(
    "pricing_mode_changes_total",
    "Total pricing mode change requests by target mode and result",
    ["target_mode", "result"],
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
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_price_tier_replacement(outcome: str, duration: float | None = None) -> None:
    price_tier_replacements_total.labels(outcome=outcome).inc()
    if duration is not None:
        price_tier_replacement_duration_seconds.observe(duration)


def observe_price_tier_validation_failure(rule: str, source: str = "store") -> None:
    price_tier_validation_failures_total.labels(rule=rule, source=source).inc()


def observe_price_quote(source: str) -> None:
    price_quotes_total.labels(source=source).inc()


def observe_pricing_mode_change(target_mode: str, result: str) -> None:
    pricing_mode_changes_total.labels(target_mode=target_mode, result=result).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
