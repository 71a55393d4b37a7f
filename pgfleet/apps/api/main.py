from __future__ import annotations

import json
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.responses import Response

from pgfleet.apps.api.errors import install_exception_handlers
from pgfleet.apps.api.response import API_VERSION, is_enveloped
from pgfleet.apps.api.routes.clusters import router as clusters_router
from pgfleet.apps.api.routes.credentials import router as credentials_router
from pgfleet.apps.api.routes.failover import router as failover_router
from pgfleet.apps.api.routes.federation import router as federation_router
from pgfleet.apps.api.routes.federation_sync import router as federation_sync_router
from pgfleet.apps.api.routes.health import router as health_router
from pgfleet.apps.api.routes.nodes import router as nodes_router
from pgfleet.apps.api.routes.ops import router as ops_router
from pgfleet.core.config import get_settings
from pgfleet.core.logging import configure_logging
from pgfleet.services.telemetry import record_request


_PREFIX = f"/{API_VERSION}"
_DOC_PATHS = (f"{_PREFIX}/openapi.json", f"{_PREFIX}/docs")

# Sync routes share the /federation prefix, so they mount before the federation node routes.
_ROUTERS = (
    health_router,
    clusters_router,
    nodes_router,
    failover_router,
    credentials_router,
    federation_sync_router,
    federation_router,
    ops_router,
)

# Paths reachable without operator headers; sync routes use federation keys instead.
_PUBLIC_PATHS = {f"{_PREFIX}/health", f"{_PREFIX}/ready", f"{_PREFIX}/federation/inbound-requests"}
_OPERATOR_SYNC_PATHS = {f"{_PREFIX}/federation/sync/trigger"}


def _should_envelope(request: Request, response: Response) -> bool:
    path = request.url.path
    return (
        path.startswith(_PREFIX)
        and not path.startswith(_DOC_PATHS)
        and response.status_code < 400
        and response.media_type == "application/json"
    )


def _envelope_plain_json(response: Response, request_id: str) -> Response:
    # Routes return success_response(); this catches bare JSON bodies that slipped through.
    raw_body = getattr(response, "body", None)
    if not raw_body:
        return response
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return response
    if is_enveloped(payload):
        return response
    wrapped = JSONResponse(
        content={"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}},
        status_code=response.status_code,
    )
    for key, value in response.headers.items():
        if key.lower() not in ("content-length", "content-type"):
            wrapped.headers[key] = value
    return wrapped


def _security_for(path: str) -> list[dict[str, list]] | None:
    if path in _PUBLIC_PATHS:
        return None
    if path.startswith(f"{_PREFIX}/federation/sync") and path not in _OPERATOR_SYNC_PATHS:
        return [{"FederationApiKey": [], "FederationInstanceId": []}]
    return [{"ActorId": [], "ActorRole": []}]


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        if _should_envelope(request, response):
            response = _envelope_plain_json(response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    install_exception_handlers(app)
    for router in _ROUTERS:
        app.include_router(router, prefix=_PREFIX)

    @app.get(f"{_PREFIX}/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"{_PREFIX}/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=f"{_PREFIX}/openapi.json", title=f"{app.title} {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"{_PREFIX}/docs")

    def custom_openapi() -> dict:
        # Document the identity headers the upstream auth layer injects and the peer key headers.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
        schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        for name, header in (
            ("ActorId", "X-Actor-Id"),
            ("ActorRole", "X-Actor-Role"),
            ("FederationApiKey", "X-Federation-Api-Key"),
            ("FederationInstanceId", "X-Federation-Instance-Id"),
        ):
            schemes[name] = {"type": "apiKey", "in": "header", "name": header}
        for path, operations in schema.get("paths", {}).items():
            security = _security_for(path)
            if security is None:
                continue
            for operation in operations.values():
                operation.setdefault("security", security)
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
