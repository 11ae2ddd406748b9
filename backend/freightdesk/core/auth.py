"""Tenant and reviewer identity for API routes.

In demo mode with auth disabled, identity comes from headers. Otherwise
every bearer token is bound to a customer and a role through the
``TENANT_TOKENS`` setting (``token:customer[:role[:actor]]`` entries).
Customer tokens are pinned to their own customer; admin (reviewer) tokens
may act for any customer named in ``X-Tenant-ID``. An authenticated actor
always comes from its grant and ``X-Actor`` is ignored.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from freightdesk.core.config import get_settings
from freightdesk.core.logging import logger


security = HTTPBearer(auto_error=False)

CUSTOMER_ROLE = "customer"
ADMIN_ROLE = "admin"
SUPPORTED_ROLES = {CUSTOMER_ROLE, ADMIN_ROLE}


@dataclass
class TenantContext:
    tenant_id: str
    authenticated: bool
    actor: str
    role: str

    @property
    def customer_id(self) -> str:
        return self.tenant_id


@dataclass(frozen=True)
class TokenGrant:
    tenant_id: str
    role: str
    actor: str = ""

    def actor_name(self) -> str:
        return self.actor or f"{self.role}:{self.tenant_id}"


def _role(value: str | None, default: str) -> str:
    role = (value or "").strip().lower() or default
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def parse_token_grants(raw: str) -> Dict[str, TokenGrant]:
    """Parse comma-separated ``token:customer[:role[:actor]]`` grants; role defaults to customer."""
    grants: Dict[str, TokenGrant] = {}
    for segment in (raw or "").split(","):
        parts = [part.strip() for part in segment.strip().split(":")]
        if parts == [""]:
            continue
        if len(parts) not in (2, 3, 4) or not parts[0] or not parts[1]:
            logger.warning("Ignoring malformed token grant", entry=segment.strip())
            continue
        role = (parts[2] if len(parts) >= 3 else "").lower() or CUSTOMER_ROLE
        if role not in SUPPORTED_ROLES:
            logger.warning("Ignoring token grant with unknown role", tenant_id=parts[1], role=role)
            continue
        actor = parts[3] if len(parts) == 4 else ""
        grants[parts[0]] = TokenGrant(tenant_id=parts[1], role=role, actor=actor)
    return grants


def get_tenant_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    x_actor: str | None = Header(default=None, alias="X-Actor"),
) -> TenantContext:
    settings = get_settings()
    requested_tenant = (x_tenant_id or "").strip()
    actor = (x_actor or "").strip()

    if not settings.auth_required():
        return TenantContext(
            tenant_id=requested_tenant or (settings.default_tenant_id or "demo").strip() or "demo",
            authenticated=False,
            actor=actor or "anonymous",
            role=_role(x_actor_role, CUSTOMER_ROLE),
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")

    grant = parse_token_grants(settings.tenant_tokens).get(credentials.credentials.strip())
    if grant is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid bearer token")

    tenant_id = grant.tenant_id
    if requested_tenant and requested_tenant != grant.tenant_id:
        if grant.role != ADMIN_ROLE:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token tenant mismatch")
        tenant_id = requested_tenant

    # The token decides role and actor; a header may only narrow a reviewer to customer.
    role = grant.role
    if x_actor_role and _role(x_actor_role, role) == CUSTOMER_ROLE:
        role = CUSTOMER_ROLE

    return TenantContext(
        tenant_id=tenant_id,
        authenticated=True,
        actor=grant.actor_name(),
        role=role,
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
