from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from restopay.database import create_engine, create_sessionmaker, create_tables
from restopay.errors import ErrorKind, GatewayTransportError, PaymentError
from restopay.logging_config import configure_logging
from restopay.routers.admin_router import router as admin_router
from restopay.routers.auth_router import router as auth_router
from restopay.routers.mpesa_router import router as mpesa_router
from restopay.settings import Settings, get_settings
from restopay.services.callback_receiver import CallbackReceiver
from restopay.services.daraja_client import DarajaClient
from restopay.services.order_service import OrderService
from restopay.services.payment_gateway import PaymentGateway
from restopay.services.transaction_store import TransactionStore

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.GATEWAY_AUTH: 502,
    ErrorKind.GATEWAY_TRANSPORT: 503,
    ErrorKind.GATEWAY_REJECTION: 400,
    ErrorKind.PAYMENT_FAILED: 200,
    ErrorKind.RECONCILIATION_ANOMALY: 404,
}


def create_app(settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the API with its process-wide collaborators.

    ``transport`` replaces the network layer of the Daraja HTTP client, which is
    how tests stand in for Safaricom.
    """
    settings = settings or get_settings()
    configure_logging(debug=settings.debug)
    logger = structlog.get_logger().bind(component="app")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_engine(settings.database_url, echo=settings.database_echo)
        await create_tables(engine)
        sessionmaker = create_sessionmaker(engine)
        http_client = httpx.AsyncClient(transport=transport, timeout=settings.gateway_timeout_seconds)

        store = TransactionStore(sessionmaker)
        orders = OrderService(sessionmaker)
        daraja = DarajaClient(settings, http_client)

        app.state.sessionmaker = sessionmaker
        app.state.transaction_store = store
        app.state.order_service = orders
        app.state.daraja_client = daraja
        app.state.payment_gateway = PaymentGateway(settings, daraja, store, orders)
        app.state.callback_receiver = CallbackReceiver(store, orders)

        missing = settings.missing_mpesa_credentials()
        if missing:
            logger.warning("mpesa_not_configured", missing=missing)
        logger.info("startup", environment=settings.environment.value, mpesa=settings.mpesa_environment.value)
        try:
            yield
        finally:
            await http_client.aclose()
            await engine.dispose()
            logger.info("shutdown")

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    # --- CORS configuration ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        if isinstance(exc, GatewayTransportError) and exc.timed_out:
            status_code = 504
        logger.info("payment_error", path=request.url.path, kind=exc.kind.value, message=exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict(include_detail=settings.debug))

    app.include_router(mpesa_router)
    app.include_router(auth_router)
    app.include_router(admin_router)

    # --- Health check ---
    @app.get("/")
    async def root():
        return {"status": "OK"}

    return app
