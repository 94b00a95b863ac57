from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from restopay.errors import GatewayAuthError, GatewayRejection, GatewayTransportError
from restopay.settings import Settings
from restopay.services.utils import basic_auth_header, generate_password, generate_timestamp

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

DEFAULT_TOKEN_TTL_SECONDS = 3599

# Daraja error codes
INVALID_TOKEN_ERROR_CODES = {"404.001.03"}
# The query endpoint answers 500.001.1001 while the customer has not yet acted on the prompt
STILL_PROCESSING_ERROR_CODES = {"500.001.1001"}
UNKNOWN_CHECKOUT_ERROR_CODES = {"400.002.02"}
# On the push endpoint 500.001.1001 means the shortcode/passkey pair was refused
PUSH_CREDENTIAL_ERROR_CODES = {"500.001.1001"}
# ResultCode returned by the query endpoint for prompts still being processed
STILL_PROCESSING_RESULT_CODES = {"4999"}


class QueryOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str
    response_description: str
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class StkQueryResult:
    outcome: QueryOutcome
    result_code: Optional[str]
    result_desc: str
    receipt_number: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)


class AccessTokenCache:
    """Process-wide bearer token with expiry; one fetch at a time."""

    def __init__(self, margin_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    async def get(self, fetch: Callable[[], Awaitable[tuple[str, int]]]) -> str:
        token = self.peek()
        if token:
            return token
        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self.peek()
            if token:
                return token
            token, expires_in = await fetch()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - self.margin_seconds, 0)
            return token

    def invalidate(self, token: Optional[str] = None) -> None:
        if token is None or token == self._token:
            self._token = None
            self._expires_at = 0.0


def _json_or_none(resp: httpx.Response) -> Optional[dict]:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class DarajaClient:
    """Thin async client for the Safaricom Daraja STK push API.

    Every outbound call is bounded by ``settings.gateway_timeout_seconds`` and
    every failure leaves this class as one of the typed gateway errors.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        token_cache: Optional[AccessTokenCache] = None,
    ):
        self.settings = settings
        self.http = http_client
        self.base_url = settings.mpesa_base_url
        self.timeout = settings.gateway_timeout_seconds
        self.tokens = token_cache or AccessTokenCache(settings.token_expiry_margin_seconds)
        self._logger = structlog.get_logger().bind(component="daraja_client")

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            return await asyncio.wait_for(
                self.http.request(method, url, timeout=self.timeout, **kwargs),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._logger.warning("gateway_timeout", path=path, timeout=self.timeout)
            raise GatewayTransportError(
                "M-Pesa did not respond in time. Check your connection and try again.",
                detail=f"{method} {path} exceeded {self.timeout}s",
                timed_out=True,
            ) from exc
        except httpx.HTTPError as exc:
            self._logger.warning("gateway_unreachable", path=path, error=str(exc))
            raise GatewayTransportError(
                "Network error when connecting to M-Pesa. Check your connection and try again.",
                detail=f"{method} {path}: {exc}",
            ) from exc

    async def _fetch_token(self) -> tuple[str, int]:
        missing = self.settings.missing_mpesa_credentials()
        if missing:
            self._logger.error("mpesa_credentials_missing", missing=missing)
            raise GatewayAuthError(
                "Payment service is not configured. Please contact staff.",
                detail=f"missing settings: {', '.join(missing)}",
            )

        headers = {
            "Authorization": basic_auth_header(
                self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret
            )
        }
        resp = await self._send("GET", TOKEN_PATH, headers=headers)
        if resp.status_code != 200:
            self._logger.error("token_request_rejected", status_code=resp.status_code)
            raise GatewayAuthError(
                "Failed to authenticate with M-Pesa. This is a configuration issue.",
                detail=f"Status: {resp.status_code}, Response: {resp.text[:500]}",
            )

        data = _json_or_none(resp) or {}
        token = data.get("access_token")
        if not token:
            raise GatewayAuthError(
                "Failed to authenticate with M-Pesa. This is a configuration issue.",
                detail="token response did not contain access_token",
            )
        try:
            expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL_SECONDS
        self._logger.debug("access_token_acquired", expires_in=expires_in)
        return token, expires_in

    async def get_access_token(self) -> str:
        return await self.tokens.get(self._fetch_token)

    @staticmethod
    def _token_rejected(resp: httpx.Response) -> bool:
        if resp.status_code == 401:
            return True
        data = _json_or_none(resp) or {}
        return str(data.get("errorCode")) in INVALID_TOKEN_ERROR_CODES

    async def _post_authorized(self, path: str, body: dict) -> httpx.Response:
        for attempt in range(2):
            token = await self.get_access_token()
            headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
            resp = await self._send("POST", path, json=body, headers=headers)
            if not self._token_rejected(resp):
                return resp
            self._logger.info("access_token_rejected", path=path, attempt=attempt)
            self.tokens.invalidate(token)
        raise GatewayAuthError(
            "M-Pesa rejected the access token. This is a configuration issue.",
            detail=f"Status: {resp.status_code}, Response: {resp.text[:500]}",
        )

    def _signed_fields(self) -> dict:
        timestamp = generate_timestamp()
        return {
            "BusinessShortCode": self.settings.mpesa_shortcode,
            "Password": generate_password(
                self.settings.mpesa_shortcode, self.settings.mpesa_passkey, timestamp
            ),
            "Timestamp": timestamp,
        }

    async def stk_push(self, phone_number: str, amount: int, table_number: str) -> StkPushResult:
        body = {
            **self._signed_fields(),
            "TransactionType": self.settings.stk_transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.settings.mpesa_shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": f"Table-{table_number}",
            "TransactionDesc": self.settings.mpesa_transaction_desc,
        }
        self._logger.info("stk_push_request", amount=amount, table_number=table_number, phone=phone_number)

        resp = await self._post_authorized(STK_PUSH_PATH, body)
        data = _json_or_none(resp)
        if data is None:
            raise GatewayRejection(
                "Failed to initiate STK Push with M-Pesa",
                detail=f"Status: {resp.status_code}, Response: {resp.text[:500]}",
            )

        if "errorCode" in data:
            error_code = str(data.get("errorCode"))
            error_message = data.get("errorMessage") or "STK Push failed"
            if error_code in PUSH_CREDENTIAL_ERROR_CODES or resp.status_code == 403:
                raise GatewayAuthError(
                    "M-Pesa rejected the STK push due to invalid credentials. This is a configuration issue.",
                    detail=f"{error_code}: {error_message}",
                )
            raise GatewayRejection(
                f"M-Pesa API error: {error_message}",
                detail=f"Status: {resp.status_code}, errorCode: {error_code}",
                error_code=error_code,
            )

        response_code = str(data.get("ResponseCode"))
        if resp.status_code >= 400 or response_code != "0":
            raise GatewayRejection(
                data.get("ResponseDescription") or "STK Push failed",
                detail=f"Status: {resp.status_code}, ResponseCode: {response_code}",
                error_code=response_code,
            )

        checkout_request_id = data.get("CheckoutRequestID")
        merchant_request_id = data.get("MerchantRequestID")
        if not checkout_request_id or not merchant_request_id:
            raise GatewayRejection(
                "M-Pesa accepted the request but returned no checkout reference",
                detail="missing CheckoutRequestID/MerchantRequestID",
            )

        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            response_description=data.get("ResponseDescription", ""),
            raw=data,
        )

    async def stk_query(self, checkout_request_id: str) -> StkQueryResult:
        body = {**self._signed_fields(), "CheckoutRequestID": checkout_request_id}
        resp = await self._post_authorized(STK_QUERY_PATH, body)
        data = _json_or_none(resp)
        if data is None:
            raise GatewayRejection(
                "Failed to check payment status with M-Pesa",
                detail=f"Status: {resp.status_code}, Response: {resp.text[:500]}",
            )

        if "errorCode" in data:
            error_code = str(data.get("errorCode"))
            error_message = data.get("errorMessage") or "Payment is still pending"
            if error_code in STILL_PROCESSING_ERROR_CODES | UNKNOWN_CHECKOUT_ERROR_CODES:
                return StkQueryResult(QueryOutcome.PENDING, None, error_message, raw=data)
            raise GatewayRejection(
                f"M-Pesa API error: {error_message}",
                detail=f"Status: {resp.status_code}, errorCode: {error_code}",
                error_code=error_code,
            )

        response_code = str(data.get("ResponseCode"))
        if response_code != "0":
            raise GatewayRejection(
                data.get("ResponseDescription") or "Failed to check payment status",
                detail=f"Status: {resp.status_code}, ResponseCode: {response_code}",
                error_code=response_code,
            )

        result_code = data.get("ResultCode")
        result_desc = data.get("ResultDesc") or ""
        if result_code is None or str(result_code) in STILL_PROCESSING_RESULT_CODES:
            return StkQueryResult(
                QueryOutcome.PENDING, None, result_desc or "Payment is still pending", raw=data
            )
        if str(result_code) == "0":
            return StkQueryResult(
                QueryOutcome.COMPLETED,
                "0",
                result_desc or "Payment was completed successfully",
                receipt_number=data.get("MpesaReceiptNumber"),
                raw=data,
            )
        return StkQueryResult(
            QueryOutcome.FAILED, str(result_code), result_desc or "Payment verification failed", raw=data
        )
