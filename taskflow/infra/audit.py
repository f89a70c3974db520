from __future__ import annotations

from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from taskflow.domain.models import AuditLog, now_utc
from taskflow.infra.db import engine
from taskflow.infra.logging_setup import get_logger

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
UNAUDITED_PATHS = {"/healthz", "/readyz"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"

# Path parameter -> resource prefix for work-item routes.
RESOURCE_PARAMS = (("task_id", "task"), ("reminder_id", "reminder"))

logger = get_logger(__name__)


def write_audit_log(
    *,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def _default_resource(request: Request) -> str:
    for param, prefix in RESOURCE_PARAMS:
        value = request.path_params.get(param)
        if value:
            return f"{prefix}:{value}"
    return request.url.path


def _audit_context(request: Request) -> dict[str, Any]:
    raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    return dict(raw) if isinstance(raw, dict) else {}


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Attach action, resource and extra detail to the audit row of this request.

    Later calls refine earlier ones; ``detail`` dictionaries are merged.
    """
    context = _audit_context(request)
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = _deep_merge(previous, detail) if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def _build_detail(
    request: Request,
    response: Response,
    *,
    actor_id: str | None,
    action: str,
    resource: str,
) -> dict[str, Any]:
    route = request.scope.get("route")
    return {
        "who": {"actor_id": actor_id},
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": request.url.path,
            "route": getattr(route, "path", request.url.path),
            "query": request.url.query,
            "client_ip": request.client.host if request.client is not None else None,
        },
        "what": {"action": action, "resource": resource, "method": request.method},
        "result": {
            "status_code": response.status_code,
            "outcome": _status_outcome(response.status_code),
        },
    }


class AuditMiddleware(BaseHTTPMiddleware):
    """Writes one ``audit_logs`` row per write request, whatever its outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if request.url.path in UNAUDITED_PATHS or request.method not in WRITE_METHODS:
            return response

        context = _audit_context(request)
        claims = getattr(request.state, "claims", {})
        actor_id = claims.get("sub") if isinstance(claims, dict) else None
        action = context.get("action")
        if not isinstance(action, str):
            action = f"{request.method}:{request.url.path}"
        resource = context.get("resource")
        if not isinstance(resource, str):
            resource = _default_resource(request)

        detail = _build_detail(request, response, actor_id=actor_id, action=action, resource=resource)
        extra = context.get("detail")
        if isinstance(extra, dict):
            detail = _deep_merge(detail, extra)

        try:
            write_audit_log(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=request.method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            # The audit trail never blocks the request it describes.
            logger.exception("audit write failed for %s %s", request.method, request.url.path)
        return response
