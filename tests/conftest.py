import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from restopay.database import create_engine, create_sessionmaker, create_tables
from restopay.main import create_app
from restopay.settings import EnvironmentTypes, Settings
from restopay.services.callback_receiver import CallbackReceiver
from restopay.services.daraja_client import DarajaClient
from restopay.services.order_service import OrderService
from restopay.services.payment_gateway import PaymentGateway
from restopay.services.transaction_store import TransactionStore

CART = [
    {"id": 1, "name": "Nyama Choma", "price": "1,200", "quantity": 1},
    {"id": 7, "name": "Ugali", "price": 150, "quantity": 2},
]


class FakeDaraja:
    """Stand-in for the Safaricom Daraja API behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.delay = 0.0
        self.token_response = (200, {"access_token": "tok-1", "expires_in": "3599"})
        self.push_response = (
            200,
            {
                "MerchantRequestID": "mr_1",
                "CheckoutRequestID": "ws_1",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )
        self.query_response = (
            500,
            {"requestId": "q-1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        path = request.url.path
        if path == "/oauth/v1/generate":
            status, body = self.token_response
        elif path == "/mpesa/stkpush/v1/processrequest":
            status, body = self.push_response
        elif path == "/mpesa/stkpushquery/v1/query":
            status, body = self.query_response
        else:
            status, body = 404, {"errorMessage": "not found"}
        return httpx.Response(status, json=body)


def callback_payload(checkout_request_id="ws_1", result_code=0, receipt="ABC123", phone=254712345678):
    stk = {
        "MerchantRequestID": "mr_1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if str(result_code) == "0" else "Request cancelled by user",
    }
    if str(result_code) == "0":
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 1500},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20240512143015},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": stk}}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment=EnvironmentTypes.DEBUG,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'restopay.db'}",
        secret_key="test-secret",
        mpesa_consumer_key="ck",
        mpesa_consumer_secret="cs",
        mpesa_shortcode="174379",
        mpesa_passkey="pk",
        mpesa_callback_url="https://example.test/payments/mpesa/callback",
        gateway_timeout_seconds=2,
        _env_file=None,
    )


@pytest.fixture
def fake_daraja():
    return FakeDaraja()


@pytest.fixture
async def services(settings, fake_daraja):
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    sessionmaker = create_sessionmaker(engine)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_daraja))

    store = TransactionStore(sessionmaker)
    orders = OrderService(sessionmaker)
    daraja = DarajaClient(settings, http_client)

    class Services:
        pass

    s = Services()
    s.store = store
    s.orders = orders
    s.daraja = daraja
    s.gateway = PaymentGateway(settings, daraja, store, orders)
    s.receiver = CallbackReceiver(store, orders)
    yield s

    await http_client.aclose()
    await engine.dispose()


@pytest.fixture
def client(settings, fake_daraja):
    app = create_app(settings, transport=httpx.MockTransport(fake_daraja))
    with TestClient(app) as test_client:
        yield test_client
