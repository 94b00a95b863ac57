from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from restopay.dependencies import get_order_service, get_transaction_store
from restopay.models import StaffRole, StaffUser
from restopay.schemas import OrderStatusUpdate, OrderView, TransactionRead
from restopay.services.auth import require_roles
from restopay.services.order_service import OrderService, order_view
from restopay.services.transaction_store import TransactionStore

router = APIRouter(prefix="/admin", tags=["admin"])

any_staff = require_roles(StaffRole.ADMIN, StaffRole.COOK, StaffRole.STAFF)
admin_only = require_roles(StaffRole.ADMIN)


@router.get("/transactions", response_model=List[TransactionRead])
async def list_transactions(
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    store: TransactionStore = Depends(get_transaction_store),
    _: StaffUser = Depends(admin_only),
):
    return await store.list_recent(status=status, limit=limit)


@router.get("/transactions/{checkout_request_id}", response_model=TransactionRead)
async def get_transaction(
    checkout_request_id: str,
    store: TransactionStore = Depends(get_transaction_store),
    _: StaffUser = Depends(admin_only),
):
    transaction = await store.get(checkout_request_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


@router.get("/orders", response_model=List[OrderView])
async def list_orders(
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    orders: OrderService = Depends(get_order_service),
    _: StaffUser = Depends(any_staff),
):
    return [order_view(order) for order in await orders.list_orders(status=status, limit=limit)]


@router.patch("/orders/{order_id}/status", response_model=OrderView)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    orders: OrderService = Depends(get_order_service),
    _: StaffUser = Depends(any_staff),
):
    try:
        order = await orders.update_status(order_id, payload.status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown order status: {payload.status}")
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order_view(order)
