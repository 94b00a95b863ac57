from fastapi import Request

from restopay.settings import Settings
from restopay.services.callback_receiver import CallbackReceiver
from restopay.services.order_service import OrderService
from restopay.services.payment_gateway import PaymentGateway
from restopay.services.transaction_store import TransactionStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_callback_receiver(request: Request) -> CallbackReceiver:
    return request.app.state.callback_receiver


def get_transaction_store(request: Request) -> TransactionStore:
    return request.app.state.transaction_store


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service
