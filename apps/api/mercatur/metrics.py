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

row_policy_denied_total = Counter(
    "row_policy_denied_total",
    "Row access denied by the row policy store",
    ["resource", "command"],
)

ownership_check_denied_total = Counter(
    "ownership_check_denied_total",
    "Mutations rejected by the explicit ownership check",
    ["resource", "action"],
)

crm_action_errors_total = Counter(
    "crm_action_errors_total",
    "Repository actions that returned an error result",
    ["entity", "code"],
)

profile_self_heal_total = Counter(
    "profile_self_heal_total",
    "Profiles created by a self-healing layer",
    ["layer"],
)

profile_last_login_dispatch_failures_total = Counter(
    "profile_last_login_dispatch_failures_total",
    "Failed last-login background dispatches",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_row_policy_denied(resource: str, command: str) -> None:
    row_policy_denied_total.labels(resource=resource, command=command).inc()


def observe_ownership_denied(resource: str, action: str) -> None:
    ownership_check_denied_total.labels(resource=resource, action=action).inc()


def observe_action_error(entity: str, code: str) -> None:
    crm_action_errors_total.labels(entity=entity, code=code).inc()


def observe_profile_self_heal(layer: str) -> None:
    profile_self_heal_total.labels(layer=layer).inc()


def observe_last_login_dispatch_failure() -> None:
    profile_last_login_dispatch_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
