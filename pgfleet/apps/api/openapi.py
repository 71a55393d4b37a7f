from __future__ import annotations

from typing import Any

from pgfleet.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", code="INVALID_NODE_IDS", message="Invalid node IDs"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="X-Actor-Id header is required"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response(
        "Conflict",
        code="FAILOVER_IN_PROGRESS",
        message="Another failover is already in progress for this cluster",
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response("Managed node unavailable", code="NODE_UNAVAILABLE", message="Connection refused"),
}

FEDERATION_PEER_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Invalid federation credentials",
        code="FEDERATION_AUTH_INVALID",
        message="Invalid federation credentials",
    ),
    403: _response(
        "Wrong federation role",
        code="FEDERATION_ROLE_INVALID",
        message="Only Partners can receive sync data",
    ),
}
