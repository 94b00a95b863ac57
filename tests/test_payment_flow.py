import asyncio

import pytest

from restopay.errors import GatewayRejection, GatewayTransportError, PaymentValidationError
from restopay.models import TransactionStatus
from restopay.schemas import StkCallbackPayload
from restopay.services.daraja_client import QueryOutcome

from conftest import CART, callback_payload

QUERY_SUCCESS = (
    200,
    {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "The service request is processed successfully."},
)


def test_success_callback_metadata_is_parsed():
    callback = StkCallbackPayload.model_validate(callback_payload()).Body.stkCallback
    assert callback.succeeded
    assert callback.metadata_value("MpesaReceiptNumber") == "ABC123"
    assert callback.metadata_value("PhoneNumber") == 254712345678
    assert callback.metadata_value("Balance") is None


async def test_initiate_then_callback_creates_one_order(services):
    result = await services.gateway.initiate("0712345678", 1500, "5", CART)
    assert result.checkout_request_id == "ws_1"
    assert result.persisted

    transaction = await services.store.get("ws_1")
    assert transaction.status == TransactionStatus.PENDING.value
    assert transaction.phone_number == "254712345678"
    assert transaction.amount == 1500
    assert transaction.table_number == "5"
    assert transaction.items == CART

    ack = await services.receiver.handle(callback_payload())
    assert ack.ResultCode == 0

    transaction = await services.store.get("ws_1")
    assert transaction.status == TransactionStatus.COMPLETED.value
    assert transaction.mpesa_receipt_number == "ABC123"
    assert transaction.transaction_date == "20240512143015"

    orders = await services.orders.list_orders()
    assert len(orders) == 1
    assert orders[0].table_number == "5"
    assert orders[0].transaction_id == transaction.id
    assert orders[0].customer_name == "M-Pesa Customer"
    assert [line.name for line in orders[0].items] == ["Nyama Choma", "Ugali"]


async def test_fractional_amount_sent_as_whole_shillings(services, fake_daraja):
    items = [{"id": 3, "name": "Mbuzi Fry", "price": "1899.50", "quantity": 1}]
    await services.gateway.initiate("0712345678", 1899.5, "5", items)
    assert fake_daraja.bodies("/mpesa/stkpush/v1/processrequest")[0]["Amount"] == 1900
    assert (await services.store.get("ws_1")).amount == 1900


async def test_amount_must_match_cart_subtotal(services, fake_daraja):
    with pytest.raises(PaymentValidationError) as excinfo:
        await services.gateway.initiate("0712345678", 1, "5", CART)
    assert "cart_subtotal=1500" in excinfo.value.detail
    assert fake_daraja.requests == []
    assert await services.store.list_recent() == []


async def test_callback_with_string_result_code_completes(services):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    ack = await services.receiver.handle(callback_payload(result_code="0"))
    assert ack.ResultCode == 0

    transaction = await services.store.get("ws_1")
    assert transaction.status == TransactionStatus.COMPLETED.value
    assert transaction.mpesa_receipt_number == "ABC123"
    assert len(await services.orders.list_orders()) == 1


async def test_invalid_input_never_reaches_gateway(services, fake_daraja):
    with pytest.raises(PaymentValidationError):
        await services.gateway.initiate("12345", 1500, "5", CART)
    with pytest.raises(PaymentValidationError):
        await services.gateway.initiate("0712345678", 0, "5", CART)
    assert fake_daraja.requests == []


async def test_rejected_initiation_creates_no_transaction(services, fake_daraja):
    fake_daraja.push_response = (200, {"ResponseCode": "1", "ResponseDescription": "Rejected", "CheckoutRequestID": "ws_1", "MerchantRequestID": "mr_1"})
    with pytest.raises(GatewayRejection):
        await services.gateway.initiate("0712345678", 1500, "5", CART)
    assert await services.store.list_recent() == []


async def test_store_failure_after_push_still_reports_success(services, monkeypatch):
    async def broken(**kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(services.store, "create_pending", broken)
    result = await services.gateway.initiate("0712345678", 1500, "5", CART)
    assert result.checkout_request_id == "ws_1"
    assert not result.persisted


async def test_duplicate_callback_is_ignored(services):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    await services.receiver.handle(callback_payload())
    first = await services.store.get("ws_1")

    ack = await services.receiver.handle(callback_payload(receipt="OTHER"))
    assert ack.ResultCode == 0

    second = await services.store.get("ws_1")
    assert second.mpesa_receipt_number == "ABC123"
    assert second.updated_at == first.updated_at
    assert len(await services.orders.list_orders()) == 1


async def test_failed_callback_marks_failed_without_order(services):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    await services.receiver.handle(callback_payload(result_code=1032))

    transaction = await services.store.get("ws_1")
    assert transaction.status == TransactionStatus.FAILED.value
    assert transaction.result_code == "1032"
    assert transaction.result_description == "Request cancelled by user"
    assert await services.orders.list_orders() == []

    # A late success callback cannot revive it
    await services.receiver.handle(callback_payload())
    assert (await services.store.get("ws_1")).status == TransactionStatus.FAILED.value


async def test_unknown_or_malformed_callback_is_acknowledged(services):
    ack = await services.receiver.handle(callback_payload(checkout_request_id="ws_missing"))
    assert ack.ResultCode == 0
    ack = await services.receiver.handle({"Body": {}})
    assert ack.ResultCode == 0
    assert await services.orders.list_orders() == []


async def test_order_failure_does_not_roll_back_payment(services, monkeypatch):
    await services.gateway.initiate("0712345678", 1500, "5", CART)

    async def broken(*args, **kwargs):
        raise RuntimeError("orders table offline")

    monkeypatch.setattr(services.orders, "create_from_transaction", broken)
    ack = await services.receiver.handle(callback_payload())

    assert ack.ResultCode == 0
    assert (await services.store.get("ws_1")).status == TransactionStatus.COMPLETED.value


async def test_order_phone_falls_back_to_payer_phone(services):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    payload = callback_payload()
    items = payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
    payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [i for i in items if i["Name"] != "PhoneNumber"]

    await services.receiver.handle(payload)
    orders = await services.orders.list_orders()
    assert orders[0].customer_phone == "254712345678"


async def test_poll_pending_then_completed(services, fake_daraja):
    await services.gateway.initiate("0712345678", 1500, "5", CART)

    status = await services.gateway.query_status("ws_1")
    assert status.outcome == QueryOutcome.PENDING
    assert not status.succeeded
    assert (await services.store.get("ws_1")).status == TransactionStatus.PENDING.value

    fake_daraja.query_response = QUERY_SUCCESS
    status = await services.gateway.query_status("ws_1")
    assert status.succeeded
    assert status.transaction_id == "ws_1"
    assert (await services.store.get("ws_1")).status == TransactionStatus.COMPLETED.value
    assert len(await services.orders.list_orders()) == 1


async def test_poll_reports_failure_distinct_from_pending(services, fake_daraja):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    fake_daraja.query_response = (200, {"ResponseCode": "0", "ResultCode": "2001", "ResultDesc": "The initiator information is invalid."})

    status = await services.gateway.query_status("ws_1")
    assert status.outcome == QueryOutcome.FAILED
    assert (await services.store.get("ws_1")).status == TransactionStatus.FAILED.value


async def test_poll_after_resolution_does_not_call_provider(services, fake_daraja):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    await services.receiver.handle(callback_payload())
    calls_before = len(fake_daraja.requests)

    status = await services.gateway.query_status("ws_1")
    assert status.succeeded
    assert status.transaction_id == "ABC123"
    assert len(fake_daraja.requests) == calls_before


async def test_poll_transport_failure_is_typed(services, fake_daraja, settings):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    settings.gateway_timeout_seconds = 0.05
    services.daraja.timeout = 0.05
    fake_daraja.delay = 1

    with pytest.raises(GatewayTransportError):
        await services.gateway.query_status("ws_1")
    assert (await services.store.get("ws_1")).status == TransactionStatus.PENDING.value


async def test_callback_and_poll_race_creates_single_order(services, fake_daraja):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    fake_daraja.query_response = QUERY_SUCCESS

    results = await asyncio.gather(
        services.receiver.reconcile(callback_payload()),
        services.gateway.query_status("ws_1"),
        services.receiver.reconcile(callback_payload()),
    )

    assert results[1].succeeded
    transaction = await services.store.get("ws_1")
    assert transaction.status == TransactionStatus.COMPLETED.value
    assert len(await services.orders.list_orders()) == 1


async def test_store_transition_is_compare_and_set(services):
    await services.gateway.initiate("0712345678", 1500, "5", CART)
    outcomes = await asyncio.gather(
        services.store.mark_completed("ws_1", receipt_number="R1"),
        services.store.mark_completed("ws_1", receipt_number="R2"),
        services.store.mark_failed("ws_1", result_code="1", result_description="x"),
    )
    assert sum(outcomes) == 1
    assert not await services.store.mark_completed("ws_unknown", receipt_number="R3")
