from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from restopay.errors import PaymentValidationError
from restopay.models import MpesaTransaction, TransactionStatus
from restopay.settings import Settings
from restopay.services.daraja_client import DarajaClient, QueryOutcome
from restopay.services.order_service import OrderService
from restopay.services.transaction_store import TransactionStore
from restopay.services.utils import (
    ensure_amount_matches_items,
    to_minor_units,
    validate_phone_number,
    validate_table_number,
)


@dataclass
class InitiationResult:
    checkout_request_id: str
    merchant_request_id: str
    message: str
    persisted: bool = True


@dataclass
class PaymentStatus:
    outcome: QueryOutcome
    message: str
    checkout_request_id: str
    receipt_number: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == QueryOutcome.COMPLETED

    @property
    def transaction_id(self) -> Optional[str]:
        if not self.succeeded:
            return None
        return self.receipt_number or self.checkout_request_id


def _status_from_record(transaction: MpesaTransaction) -> PaymentStatus:
    if transaction.status == TransactionStatus.COMPLETED.value:
        return PaymentStatus(
            QueryOutcome.COMPLETED,
            "Payment was completed successfully",
            transaction.checkout_request_id,
            receipt_number=transaction.mpesa_receipt_number,
        )
    if transaction.status == TransactionStatus.FAILED.value:
        return PaymentStatus(
            QueryOutcome.FAILED,
            transaction.result_description or "Payment failed",
            transaction.checkout_request_id,
        )
    return PaymentStatus(QueryOutcome.PENDING, "Payment is still pending", transaction.checkout_request_id)


class PaymentGateway:
    """Initiates STK pushes and answers status polls, keeping the store in step with Daraja."""

    def __init__(
        self,
        settings: Settings,
        daraja: DarajaClient,
        store: TransactionStore,
        orders: OrderService,
    ):
        self.settings = settings
        self.daraja = daraja
        self.store = store
        self.orders = orders
        self._logger = structlog.get_logger().bind(component="payment_gateway")

    async def initiate(
        self,
        phone_number: str,
        amount,
        table_number: str,
        items: Optional[list] = None,
    ) -> InitiationResult:
        phone = validate_phone_number(phone_number, self.settings.country_code)
        whole_amount = to_minor_units(amount)
        table = validate_table_number(table_number)
        ensure_amount_matches_items(whole_amount, items)

        push = await self.daraja.stk_push(phone, whole_amount, table)
        self._logger.info(
            "stk_push_sent",
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            table_number=table,
        )

        # The prompt is already on the customer's phone; a lost row must not fail the request
        try:
            await self.store.create_pending(
                checkout_request_id=push.checkout_request_id,
                merchant_request_id=push.merchant_request_id,
                phone_number=phone,
                amount=whole_amount,
                table_number=table,
                items=list(items or []),
            )
        except Exception:
            self._logger.exception("transaction_persist_failed", checkout_request_id=push.checkout_request_id)
            return InitiationResult(
                push.checkout_request_id,
                push.merchant_request_id,
                "STK Push sent but failed to save transaction record",
                persisted=False,
            )

        return InitiationResult(
            push.checkout_request_id,
            push.merchant_request_id,
            "STK Push sent. Please check your phone to complete payment.",
        )

    async def query_status(self, checkout_request_id: str) -> PaymentStatus:
        if not checkout_request_id:
            raise PaymentValidationError("Missing required parameter: checkoutRequestId")

        transaction = await self.store.get(checkout_request_id)
        if transaction is None:
            # Still worth asking Daraja: the row may have failed to persist after a successful push
            self._logger.warning("poll_unknown_checkout", checkout_request_id=checkout_request_id)
        elif transaction.is_terminal:
            return _status_from_record(transaction)

        result = await self.daraja.stk_query(checkout_request_id)
        if result.outcome == QueryOutcome.PENDING:
            return PaymentStatus(QueryOutcome.PENDING, result.result_desc, checkout_request_id)

        if transaction is None:
            return PaymentStatus(result.outcome, result.result_desc, checkout_request_id, result.receipt_number)

        if result.outcome == QueryOutcome.COMPLETED:
            won = await self.store.mark_completed(
                checkout_request_id,
                receipt_number=result.receipt_number,
                result_description=result.result_desc,
            )
            if won:
                await self.orders.try_create_from_transaction(transaction)
        else:
            won = await self.store.mark_failed(
                checkout_request_id,
                result_code=result.result_code,
                result_description=result.result_desc,
            )

        if not won:
            # The callback resolved it first; report what it stored
            refreshed = await self.store.get(checkout_request_id)
            if refreshed is not None:
                return _status_from_record(refreshed)

        return PaymentStatus(result.outcome, result.result_desc, checkout_request_id, result.receipt_number)
