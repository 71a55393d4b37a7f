from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.core.config import get_settings
from pgfleet.persistence.db import get_session
from pgfleet.services.audit import get_request_id, record_event
from pgfleet.services.federation_sync import PeerContext, verify_federation_auth


ROLE_ORDER: dict[str, int] = {
    "viewer": 1,
    "operator": 2,
    "admin": 3,
    "owner": 4,
}

_DEV_ACTOR_ID = "local-dev"
_DEV_ACTOR_ROLE = "owner"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Operator identity asserted by the upstream auth layer.
    actor_id: str
    role: str
    mfa_verified: bool = False


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"code": code, "message": message})


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _request_metadata(request: Request, **extra: str) -> dict[str, str]:
    # Minimal request context for audit rows; never copies headers.
    return {"path": request.url.path, "method": request.method, **extra}


async def get_current_principal(
    request: Request,
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    mfa_verified: str | None = Header(default=None, alias="X-MFA-Verified"),
) -> Principal:
    settings = get_settings()
    if not settings.auth_enabled:
        # Local development runs without an auth proxy in front of the API.
        role = actor_role.strip().lower() if actor_role else _DEV_ACTOR_ROLE
        return Principal(
            actor_id=actor_id or _DEV_ACTOR_ID,
            role=role if role in ROLE_ORDER else _DEV_ACTOR_ROLE,
            mfa_verified=True,
        )
    if not actor_id:
        raise _auth_error("X-Actor-Id header is required")
    if not actor_role:
        raise _auth_error("X-Actor-Role header is required")
    try:
        role = normalize_role(actor_role)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    principal = Principal(actor_id=actor_id, role=role, mfa_verified=_truthy(mfa_verified))
    request.state.principal = principal
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            # Log RBAC denials before raising a 403 response.
            await record_event(
                session=db,
                actor_id=principal.actor_id,
                actor_role=principal.role,
                entity_type="rbac",
                entity_id=None,
                action="rbac.forbidden",
                outcome="failure",
                after_state=_request_metadata(request, required_role=minimum_role),
                request_id=get_request_id(request),
                error_code="AUTH_FORBIDDEN",
                commit=True,
                best_effort=True,
            )
            raise _forbidden_error("AUTH_FORBIDDEN", "Insufficient role for this operation")
        return principal

    return _dependency


async def require_mfa(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Credential operations additionally need a fresh MFA assertion from the auth layer.
    if get_settings().credentials_require_mfa and not principal.mfa_verified:
        await record_event(
            session=db,
            actor_id=principal.actor_id,
            actor_role=principal.role,
            entity_type="rbac",
            entity_id=None,
            action="mfa.required",
            outcome="failure",
            after_state=_request_metadata(request),
            request_id=get_request_id(request),
            error_code="MFA_REQUIRED",
            commit=True,
            best_effort=True,
        )
        raise _forbidden_error("MFA_REQUIRED", "MFA verification required for credential operations")
    return principal


async def require_rotation_caller(
    request: Request,
    rotation_key: str | None = Header(default=None, alias="X-Rotation-Api-Key"),
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    mfa_verified: str | None = Header(default=None, alias="X-MFA-Verified"),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Authenticate the scheduled rotation caller.

    An external scheduler presents ``X-Rotation-Api-Key``; when no key is
    configured the endpoint falls back to normal admin operator auth.
    """
    settings = get_settings()
    if settings.rotation_api_key:
        if rotation_key and hmac.compare_digest(rotation_key.encode("utf-8"), settings.rotation_api_key.encode("utf-8")):
            return Principal(actor_id="scheduler", role="admin", mfa_verified=True)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "ROTATION_AUTH_INVALID", "message": "Invalid rotation API key"},
        )
    principal = await get_current_principal(request, actor_id, actor_role, mfa_verified)
    return await require_role("admin")(request, principal, db)


async def get_federation_peer(
    api_key: str | None = Header(default=None, alias="X-Federation-Api-Key"),
    instance_id: str | None = Header(default=None, alias="X-Federation-Instance-Id"),
    db: AsyncSession = Depends(get_db),
) -> PeerContext:
    return await verify_federation_auth(db, api_key=api_key, instance_id=instance_id)
