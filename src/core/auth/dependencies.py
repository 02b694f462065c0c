import secrets
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, Header

from src.core.auth.jwt import decode_token
from src.core.auth.permissions import Permission
from src.core.config import settings
from src.core.exceptions import AuthenticationError, AuthorizationError


@dataclass(frozen=True)
class Principal:
    """Caller identity handed to the billing core by the access-control gate."""

    user_id: int
    organization_id: int
    permissions: frozenset[str] = field(default_factory=frozenset)

    def can(self, *perms: Permission | str) -> bool:
        return all(str(p) in self.permissions for p in perms)


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationError("Authorization header required")
    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header format")
    return authorization[len("Bearer "):]


async def get_principal(
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """
    Dependency to get the calling principal from the JWT token.

    Usage:
        @router.get("/invoices")
        async def list_invoices(principal: Principal = Depends(get_principal)):
            ...
    """
    payload = decode_token(_bearer_token(authorization), token_type="access")
    try:
        user_id = int(payload["sub"])
        organization_id = int(payload["org"])
    except (TypeError, ValueError):
        raise AuthenticationError("Token identity claims are malformed")

    perms = payload.get("perms") or []
    if not isinstance(perms, list):
        raise AuthenticationError("Token permissions claim is malformed")

    return Principal(
        user_id=user_id,
        organization_id=organization_id,
        permissions=frozenset(str(p) for p in perms),
    )


def require_permission(*perms: Permission):
    """
    Dependency factory to require specific permissions.

    Usage:
        @router.post("/payments/{payment_id}/approve")
        async def approve(
            principal: Principal = Depends(require_permission(Permission.PAYMENT_VERIFY))
        ):
            ...
    """

    async def permission_checker(
        principal: Principal = Depends(get_principal),
    ) -> Principal:
        if not principal.can(*perms):
            required = ", ".join(str(p) for p in perms)
            raise AuthorizationError(f"Required permission: {required}")
        return principal

    return permission_checker


async def require_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Guard for the job trigger endpoints: ``Authorization: Bearer <CRON_SECRET>``."""
    if not settings.cron_secret:
        raise AuthenticationError("Job triggers are disabled: CRON_SECRET is not set")
    token = _bearer_token(authorization)
    if not secrets.compare_digest(token.encode(), settings.cron_secret.encode()):
        raise AuthenticationError("Invalid job trigger secret")


CurrentPrincipal = Annotated[Principal, Depends(get_principal)]
