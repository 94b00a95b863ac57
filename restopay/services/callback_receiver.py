from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from restopay.errors import ReconciliationAnomaly
from restopay.schemas import CallbackAck, StkCallback, StkCallbackPayload
from restopay.services.order_service import OrderService
from restopay.services.transaction_store import TransactionStore

ACK_OK = CallbackAck(ResultCode=0, ResultDesc="Callback received successfully")
ACK_WITH_ERRORS = CallbackAck(ResultCode=0, ResultDesc="Callback acknowledged with errors")


class CallbackReceiver:
    """Reconciles Daraja STK callbacks against the transaction store.

    Daraja retries any callback it does not see acknowledged, so ``handle``
    never raises and always answers ``ResultCode: 0``.
    """

    def __init__(self, store: TransactionStore, orders: OrderService):
        self.store = store
        self.orders = orders
        self._logger = structlog.get_logger().bind(component="callback_receiver")

    async def handle(self, payload: Any) -> CallbackAck:
        try:
            await self.reconcile(payload)
        except ReconciliationAnomaly as exc:
            self._logger.warning("callback_anomaly", reason=exc.message, detail=exc.detail)
            return ACK_OK
        except Exception:
            self._logger.exception("callback_processing_failed")
            return ACK_WITH_ERRORS
        return ACK_OK

    async def reconcile(self, payload: Any) -> bool:
        """Apply one callback. Returns True when this call moved the transaction out of PENDING."""
        try:
            callback = StkCallbackPayload.model_validate(payload).Body.stkCallback
        except ValidationError as exc:
            raise ReconciliationAnomaly("Invalid callback format", detail=str(exc)) from exc

        checkout_request_id = callback.CheckoutRequestID
        transaction = await self.store.get(checkout_request_id)
        if transaction is None:
            raise ReconciliationAnomaly(
                "Callback for unknown transaction",
                detail=f"CheckoutRequestID={checkout_request_id} MerchantRequestID={callback.MerchantRequestID}",
            )

        if transaction.is_terminal:
            self._logger.info(
                "callback_replay_ignored",
                checkout_request_id=checkout_request_id,
                status=transaction.status,
            )
            return False

        if callback.succeeded:
            return await self._apply_success(transaction, callback)

        won = await self.store.mark_failed(
            checkout_request_id,
            result_code=str(callback.ResultCode),
            result_description=callback.ResultDesc,
        )
        self._logger.info(
            "callback_payment_failed",
            checkout_request_id=checkout_request_id,
            result_code=str(callback.ResultCode),
            result_desc=callback.ResultDesc,
        )
        return won

    async def _apply_success(self, transaction, callback: StkCallback) -> bool:
        receipt_number = callback.metadata_value("MpesaReceiptNumber")
        transaction_date = callback.metadata_value("TransactionDate")
        payer_phone = callback.metadata_value("PhoneNumber")

        won = await self.store.mark_completed(
            callback.CheckoutRequestID,
            receipt_number=str(receipt_number) if receipt_number is not None else None,
            transaction_date=transaction_date,
            result_description=callback.ResultDesc,
        )
        if not won:
            # A status poll got there first and owns order creation
            return False

        self._logger.info(
            "callback_payment_completed",
            checkout_request_id=callback.CheckoutRequestID,
            receipt_number=receipt_number,
        )
        await self.orders.try_create_from_transaction(
            transaction,
            customer_phone=str(payer_phone) if payer_phone is not None else None,
        )
        return True
