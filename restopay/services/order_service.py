from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restopay.cart import line_quantity, parse_price
from restopay.models import MpesaTransaction, Order, OrderItem, OrderStatus
from restopay.schemas import CustomerView, OrderItemView, OrderView

DEFAULT_CUSTOMER_NAME = "M-Pesa Customer"


def cart_to_order_items(items: Optional[list]) -> list[OrderItem]:
    """Turn a cart snapshot into order lines. Lines without a name are skipped."""
    lines = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        quantity = line_quantity(item)
        menu_item_id = item.get("id")
        lines.append(
            OrderItem(
                menu_item_id=menu_item_id if isinstance(menu_item_id, int) else None,
                name=str(item["name"]),
                price=parse_price(item.get("price")),
                quantity=quantity,
                notes=item.get("notes"),
            )
        )
    return lines


def order_view(order: Order) -> OrderView:
    subtotal = sum((Decimal(line.price) * line.quantity for line in order.items), Decimal("0"))
    return OrderView(
        id=order.id,
        items=[
            OrderItemView(id=line.menu_item_id, name=line.name, price=f"{Decimal(line.price):.2f}", quantity=line.quantity)
            for line in order.items
        ],
        customer=CustomerView(name=order.customer_name, phone=order.customer_phone),
        status=order.status,
        total=f"{Decimal(order.total):.2f}",
        subtotal=f"{subtotal:.2f}",
        createdAt=order.created_at.isoformat() if order.created_at else "",
        tableNumber=order.table_number,
        transactionId=order.transaction_id,
    )


class OrderService:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker
        self._logger = structlog.get_logger().bind(component="order_service")

    async def create_from_transaction(
        self,
        transaction: MpesaTransaction,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> Order:
        """Materialize the paid cart snapshot as a kitchen order."""
        lines = cart_to_order_items(transaction.items)
        order = Order(
            transaction_id=transaction.id,
            customer_name=customer_name or DEFAULT_CUSTOMER_NAME,
            customer_phone=customer_phone or transaction.phone_number,
            table_number=transaction.table_number,
            status=OrderStatus.PENDING.value,
            total=sum((line.price * line.quantity for line in lines), Decimal("0")),
            items=lines,
        )
        async with self.sessionmaker() as session:
            session.add(order)
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            await session.refresh(order, attribute_names=["items", "created_at"])
        self._logger.info(
            "order_created",
            order_id=order.id,
            checkout_request_id=transaction.checkout_request_id,
            table_number=transaction.table_number,
        )
        return order

    async def try_create_from_transaction(
        self,
        transaction: MpesaTransaction,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> Optional[Order]:
        """Best-effort variant used after a payment succeeded; failures are logged, never raised."""
        try:
            return await self.create_from_transaction(transaction, customer_name, customer_phone)
        except IntegrityError:
            self._logger.warning("order_already_exists", checkout_request_id=transaction.checkout_request_id)
        except Exception:
            self._logger.exception("order_creation_failed", checkout_request_id=transaction.checkout_request_id)
        return None

    async def get(self, order_id: int) -> Optional[Order]:
        async with self.sessionmaker() as session:
            result = await session.execute(select(Order).where(Order.id == order_id))
            return result.scalar_one_or_none()

    async def get_for_transaction(self, transaction_id: int) -> Optional[Order]:
        async with self.sessionmaker() as session:
            result = await session.execute(select(Order).where(Order.transaction_id == transaction_id))
            return result.scalar_one_or_none()

    async def list_orders(self, status: Optional[str] = None, limit: int = 50) -> Sequence[Order]:
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        if status:
            query = query.where(Order.status == status)
        async with self.sessionmaker() as session:
            result = await session.execute(query.limit(limit))
            return result.scalars().all()

    async def update_status(self, order_id: int, status: str) -> Optional[Order]:
        new_status = OrderStatus(status)  # ValueError on unknown status
        async with self.sessionmaker() as session:
            result = await session.execute(select(Order).where(Order.id == order_id))
            order = result.scalar_one_or_none()
            if order is None:
                return None
            order.status = new_status.value
            await session.commit()
            await session.refresh(order, attribute_names=["items", "updated_at"])
        self._logger.info("order_status_updated", order_id=order_id, status=new_status.value)
        return order
