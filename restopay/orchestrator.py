"""Customer-session coordination of a single M-Pesa payment.

The browser has no push channel, so the session only learns about a payment
by polling. One transaction may be active per session at a time.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional, Protocol

import structlog

from restopay.cart import Cart
from restopay.errors import ErrorKind, PaymentError
from restopay.schemas import InitiatePaymentResponse, PaymentStatusResponse
from restopay.services.utils import (
    ensure_amount_matches_items,
    to_minor_units,
    validate_phone_number,
    validate_table_number,
)

USER_MESSAGES = {
    ErrorKind.GATEWAY_TRANSPORT: "Network problem while contacting M-Pesa. Check your connection and try again.",
    ErrorKind.GATEWAY_AUTH: "The payment service has a configuration issue. Please ask a staff member for help.",
}


class PaymentApi(Protocol):
    async def initiate(
        self, phone_number: str, amount: int, table_number: str, items: Optional[list] = None
    ) -> InitiatePaymentResponse: ...

    async def check_status(self, checkout_request_id: str) -> PaymentStatusResponse: ...


class SessionState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionOrchestrator:
    def __init__(self, api: PaymentApi, cart: Optional[Cart] = None, country_code: str = "254"):
        self.api = api
        self.cart = cart
        self.country_code = country_code
        self.state = SessionState.IDLE
        self.is_processing = False
        self.checkout_request_id: Optional[str] = None
        self.transaction_id: Optional[str] = None
        self.last_message: Optional[str] = None
        self.last_error: Optional[str] = None
        self.error_detail: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self._cart_cleared = False
        self._logger = structlog.get_logger().bind(component="orchestrator")

    def _clear_error(self) -> None:
        self.last_error = None
        self.error_detail = None
        self.error_kind = None

    def _record_error(self, exc: PaymentError) -> None:
        self.last_error = USER_MESSAGES.get(exc.kind, exc.message)
        self.error_detail = exc.detail or exc.message
        self.error_kind = exc.kind
        self._logger.info("payment_session_error", kind=exc.kind.value, state=self.state.value)

    async def initiate_payment(
        self,
        phone_number: str,
        amount,
        table_number: str,
        cart_items: Optional[list] = None,
    ) -> bool:
        """Returns True once the prompt has been sent to the customer's phone."""
        if self.is_processing or self.state == SessionState.PENDING:
            self.last_error = "A payment is already in progress. Check its status or cancel it first."
            self.error_detail = f"active checkout {self.checkout_request_id}"
            self.error_kind = ErrorKind.VALIDATION
            return False

        if self.state != SessionState.IDLE:
            self.reset_transaction()
            self.state = SessionState.IDLE

        self._clear_error()
        self.is_processing = True
        try:
            phone = validate_phone_number(phone_number, self.country_code)
            whole_amount = to_minor_units(amount)
            table = validate_table_number(table_number)
            if cart_items is None and self.cart is not None:
                cart_items = self.cart.snapshot()
            ensure_amount_matches_items(whole_amount, cart_items)

            response = await self.api.initiate(phone, whole_amount, table, cart_items or [])
        except PaymentError as exc:
            self._record_error(exc)
            return False
        finally:
            self.is_processing = False

        self.checkout_request_id = response.checkoutRequestId
        self.transaction_id = None
        self.last_message = response.message
        self._cart_cleared = False
        self.state = SessionState.PENDING
        self._logger.info("payment_session_pending", checkout_request_id=self.checkout_request_id)
        return True

    async def check_status(self) -> bool:
        """Returns True when the payment is confirmed complete."""
        if not self.checkout_request_id or self.state != SessionState.PENDING:
            self.last_error = "No active payment to check"
            self.error_detail = None
            self.error_kind = ErrorKind.VALIDATION
            return False
        if self.is_processing:
            return False

        checkout_request_id = self.checkout_request_id
        self.is_processing = True
        try:
            response = await self.api.check_status(checkout_request_id)
        except PaymentError as exc:
            if self._is_stale(checkout_request_id):
                return False
            # Stay pending; the caller may poll again
            self._record_error(exc)
            return False
        finally:
            self.is_processing = False

        if self._is_stale(checkout_request_id):
            self._logger.info("stale_status_discarded", checkout_request_id=checkout_request_id, status=response.status)
            return False

        self.last_message = response.message
        if response.success:
            self._clear_error()
            self.transaction_id = response.transactionId
            self.state = SessionState.SUCCESS
            self._clear_cart_once()
            return True

        if response.status == "FAILED":
            self.state = SessionState.FAILED
            self.last_error = response.message or "Payment failed"
            self.error_detail = None
            self.error_kind = ErrorKind.PAYMENT_FAILED
            return False

        self.last_error = response.message or "Payment has not been completed yet"
        self.error_detail = None
        self.error_kind = None
        return False

    async def wait_for_completion(
        self,
        interval: float = 3.0,
        max_attempts: int = 20,
        backoff: float = 1.5,
        max_interval: float = 15.0,
    ) -> bool:
        """Poll until the payment resolves, the session is cancelled, or attempts run out."""
        delay = interval
        for attempt in range(max_attempts):
            if await self.check_status():
                return True
            if self.state != SessionState.PENDING or self.error_kind == ErrorKind.GATEWAY_AUTH:
                return False
            if attempt < max_attempts - 1:
                await asyncio.sleep(delay)
                delay = min(delay * backoff, max_interval)
        return False

    def _is_stale(self, checkout_request_id: str) -> bool:
        # Cancelled or replaced while the status call was in flight
        return self.checkout_request_id != checkout_request_id or self.state != SessionState.PENDING

    def _clear_cart_once(self) -> None:
        if self.cart is not None and not self._cart_cleared:
            self.cart.clear()
        self._cart_cleared = True

    def cancel_payment(self) -> None:
        """Stop watching the active payment. Daraja may still complete it."""
        if self.state not in (SessionState.PENDING, SessionState.FAILED):
            return
        self._logger.info("payment_session_cancelled", checkout_request_id=self.checkout_request_id)
        self.checkout_request_id = None
        self.transaction_id = None
        self._clear_error()
        self.state = SessionState.IDLE

    def acknowledge(self) -> None:
        """Close a successful payment (receipt dismissed)."""
        if self.state == SessionState.SUCCESS:
            self.reset_transaction()
            self.state = SessionState.IDLE

    def reset_transaction(self) -> None:
        self.checkout_request_id = None
        self.transaction_id = None
        self.last_message = None
        self._clear_error()
