"""Tests for the access-control gate."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from jose import jwt

from src.core.auth.dependencies import Principal
from src.core.auth.jwt import create_access_token, decode_token
from src.core.auth.permissions import Permission
from src.core.config import settings
from src.core.exceptions import AuthenticationError


class TestJwt:
    def test_round_trip_claims(self):
        token = create_access_token(42, 7, permissions=[Permission.PAYMENT_VERIFY])
        payload = decode_token(token)

        assert payload["sub"] == "42"
        assert payload["org"] == 7
        assert payload["perms"] == ["payment:verify"]

    def test_expired_token_is_rejected(self):
        token = create_access_token(42, 7, expires_minutes=-1)
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_token_without_organization_is_rejected(self):
        token = jwt.encode(
            {
                "sub": "42",
                "type": "access",
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_wrong_secret_is_rejected(self):
        token = jwt.encode(
            {"sub": "1", "org": 1, "type": "access"}, "not-the-secret", algorithm="HS256"
        )
        with pytest.raises(AuthenticationError):
            decode_token(token)


class TestPrincipal:
    def test_can_requires_every_permission(self):
        principal = Principal(user_id=1, organization_id=1, permissions=frozenset({"invoice:read"}))
        assert principal.can(Permission.INVOICE_READ)
        assert not principal.can(Permission.INVOICE_READ, Permission.INVOICE_CREATE)


class TestGate:
    async def test_missing_header_is_401(self, client: AsyncClient):
        response = await client.get("/api/v1/payments")
        assert response.status_code == 401
        body = response.json()
        assert body == {
            "success": False,
            "data": None,
            "message": "Authorization header required",
            "errors": [{"field": None, "message": "Authorization header required"}],
            "details": None,
        }

    async def test_malformed_header_is_401(self, client: AsyncClient):
        response = await client.get("/api/v1/payments", headers={"Authorization": "Token abc"})
        assert response.status_code == 401

    async def test_missing_permission_is_403(self, client: AsyncClient, make_headers):
        response = await client.get(
            "/api/v1/payments", headers=make_headers(Permission.INVOICE_READ)
        )
        assert response.status_code == 403
        assert response.json()["success"] is False

    async def test_health_needs_no_token(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
