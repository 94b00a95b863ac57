from fastapi import APIRouter, Depends, Request
import structlog

from restopay.dependencies import get_callback_receiver, get_payment_gateway
from restopay.errors import PaymentValidationError
from restopay.schemas import (
    CallbackAck,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
    QueryStatusRequest,
)
from restopay.services.callback_receiver import ACK_WITH_ERRORS, CallbackReceiver
from restopay.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/payments/mpesa", tags=["mpesa-payments"])
logger = structlog.get_logger()


@router.post("/stk-push", response_model=InitiatePaymentResponse)
async def initiate_stk_push(
    payload: InitiatePaymentRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Send an STK push prompt to the payer's phone for a table's cart"""
    result = await gateway.initiate(
        phone_number=payload.phoneNumber,
        amount=payload.amount,
        table_number=payload.tableNumber,
        items=[item.model_dump() for item in payload.items],
    )
    return InitiatePaymentResponse(
        message=result.message,
        checkoutRequestId=result.checkout_request_id,
        merchantRequestId=result.merchant_request_id,
    )


@router.post("/query-status", response_model=PaymentStatusResponse)
async def query_payment_status(
    payload: QueryStatusRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Ask whether an STK push has completed"""
    if not payload.checkoutRequestId:
        raise PaymentValidationError("Missing required parameter: checkoutRequestId")

    status = await gateway.query_status(payload.checkoutRequestId)
    return PaymentStatusResponse(
        success=status.succeeded,
        message=status.message,
        status=status.outcome.value,
        transactionId=status.transaction_id,
    )


@router.post("/callback", response_model=CallbackAck)
async def mpesa_callback(
    request: Request,
    receiver: CallbackReceiver = Depends(get_callback_receiver),
):
    """Daraja result notification. Always acknowledged so Daraja does not retry."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("callback_invalid_json", component="mpesa_router")
        return ACK_WITH_ERRORS
    return await receiver.handle(payload)
