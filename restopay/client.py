from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from restopay.errors import (
    GatewayRejection,
    GatewayTransportError,
    PaymentValidationError,
    error_from_code,
)
from restopay.schemas import InitiatePaymentResponse, PaymentStatusResponse


class PaymentApiClient:
    """Calls the payment endpoints the way the table-side web client does.

    Error bodies carry a ``code`` that is mapped straight back onto the
    exception taxonomy; the orchestrator never sees a raw httpx exception.
    """

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 15.0):
        self.http = http_client
        self.timeout = timeout
        self._logger = structlog.get_logger().bind(component="payment_api_client")

    async def _post(self, path: str, body: dict) -> dict:
        try:
            resp = await asyncio.wait_for(self.http.post(path, json=body), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise GatewayTransportError(
                "The payment service took too long to respond. Check your connection and try again.",
                detail=f"POST {path} exceeded {self.timeout}s",
                timed_out=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayTransportError(
                "Could not reach the payment service. Check your connection and try again.",
                detail=f"POST {path}: {exc}",
            ) from exc

        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            if resp.status_code < 400:
                raise GatewayRejection(
                    "The payment service sent an unexpected response. Please try again.",
                    detail=f"POST {path} -> {resp.status_code}: {resp.text[:500]}",
                )
            data = {}
        if resp.status_code == 422:
            raise PaymentValidationError("Please check the payment details and try again", detail=str(data))
        if resp.status_code >= 400:
            self._logger.info("payment_api_error", path=path, status_code=resp.status_code, code=data.get("code"))
            raise error_from_code(
                data.get("code"),
                data.get("message") or f"Payment service error ({resp.status_code})",
                data.get("details"),
            )
        return data

    @staticmethod
    def _parse(model: type[BaseModel], data: dict):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise GatewayRejection(
                "The payment service sent an unexpected response. Please try again.",
                detail=f"{model.__name__}: {data!r:.500}",
            ) from exc

    async def initiate(
        self,
        phone_number: str,
        amount: int,
        table_number: str,
        items: Optional[list] = None,
    ) -> InitiatePaymentResponse:
        data = await self._post(
            "/payments/mpesa/stk-push",
            {
                "phoneNumber": phone_number,
                "amount": amount,
                "tableNumber": table_number,
                "items": items or [],
            },
        )
        return self._parse(InitiatePaymentResponse, data)

    async def check_status(self, checkout_request_id: str) -> PaymentStatusResponse:
        data = await self._post("/payments/mpesa/query-status", {"checkoutRequestId": checkout_request_id})
        return self._parse(PaymentStatusResponse, data)
