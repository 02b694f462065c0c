"""Safaricom Daraja API client (OAuth + STK push status query)."""

import base64
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import httpx

from src.core.config import settings
from src.core.exceptions import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE = "mpesa"

# ResultCodes that mean the customer's transaction definitively did not happen
FAILED_RESULT_CODES = frozenset({"1", "1019", "1025", "1032", "2001"})

# Daraja answers a query for an in-flight STK push with this HTTP 500 error code
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

# Refresh the OAuth token slightly before Daraja expires it
_TOKEN_SKEW_SECONDS = 60


class GatewayStatus(StrEnum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class TransactionStatusResult:
    status: GatewayStatus
    result_code: str | None
    description: str | None
    receipt: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def classify_result_code(code: str | int | None) -> GatewayStatus:
    """0 is success; known customer-side failures are final; anything else stays pending."""
    if code is None:
        return GatewayStatus.PENDING
    code = str(code).strip()
    if code == "0":
        return GatewayStatus.COMPLETED
    if code in FAILED_RESULT_CODES:
        return GatewayStatus.FAILED
    return GatewayStatus.PENDING


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class DarajaClient:
    """Thin async wrapper over the Daraja endpoints used for reconciliation."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        base_url: str,
        client: httpx.AsyncClient | None = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient | None = None) -> "DarajaClient":
        if not settings.mpesa_configured:
            raise ConfigurationError(
                "M-Pesa credentials are not configured "
                "(MPESA_CONSUMER_KEY, MPESA_CONSUMER_SECRET, MPESA_SHORTCODE, MPESA_PASSKEY)"
            )
        return cls(
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey,
            base_url=settings.mpesa_base_url,
            client=client,
        )

    async def _send(self, method: str, path: str, timeout: float, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=timeout, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException:
            raise ExternalServiceError(SERVICE, f"Request to {path} timed out after {timeout}s")
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE, f"Request to {path} failed: {e}")

    async def get_access_token(self, timeout: float = 30) -> str:
        """OAuth client-credentials token, cached until shortly before it expires."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        resp = await self._send(
            "GET",
            "/oauth/v1/generate",
            timeout,
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        if resp.status_code != 200:
            raise ExternalServiceError(SERVICE, f"OAuth failed with HTTP {resp.status_code}")
        try:
            body = resp.json()
            token = body["access_token"]
        except (ValueError, KeyError):
            raise ExternalServiceError(SERVICE, "OAuth response did not contain an access token")

        expires_in = int(body.get("expires_in") or 3599)
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_SKEW_SECONDS, 0)
        return token

    async def query_stk_status(
        self, checkout_request_id: str, timeout: float = 30
    ) -> TransactionStatusResult:
        """
        Ask Daraja for the outcome of an STK push.

        Raises ExternalServiceError for timeouts, network errors and unexpected
        responses; those are retried by the caller, never treated as failures.
        """
        token = await self.get_access_token(timeout)
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        resp = await self._send(
            "POST",
            "/mpesa/stkpushquery/v1/query",
            timeout,
            headers={"Authorization": f"Bearer {token}"},
            json={
                "BusinessShortCode": self.shortcode,
                "Password": stk_password(self.shortcode, self.passkey, timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": checkout_request_id,
            },
        )

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if resp.status_code != 200:
            if str(body.get("errorCode", "")) == STILL_PROCESSING_ERROR_CODE:
                return TransactionStatusResult(
                    status=GatewayStatus.PENDING,
                    result_code=STILL_PROCESSING_ERROR_CODE,
                    description=body.get("errorMessage") or "The transaction is being processed",
                    raw=body,
                )
            message = body.get("errorMessage") or f"HTTP {resp.status_code}"
            raise ExternalServiceError(SERVICE, f"Status query failed: {message}")

        code = body.get("ResultCode")
        if code is None:
            raise ExternalServiceError(SERVICE, "Status query response had no ResultCode")
        return TransactionStatusResult(
            status=classify_result_code(code),
            result_code=str(code),
            description=body.get("ResultDesc") or body.get("ResponseDescription"),
            raw=body,
        )
