from enum import Enum

from sqlalchemy import (
    JSON, Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric, Text, func, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    CANCELLED = "cancelled"


class StaffRole(str, Enum):
    ADMIN = "admin"
    COOK = "cook"
    STAFF = "staff"


class StaffUser(Base):
    __tablename__ = "staff_users"
    __table_args__ = (UniqueConstraint("email", name="uq_staff_user_email"),)

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), default=StaffRole.STAFF.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class MpesaTransaction(Base):
    __tablename__ = "mpesa_transactions"

    id = Column(Integer, primary_key=True, index=True)

    # Daraja identifiers, issued at STK push time
    checkout_request_id = Column(String(64), unique=True, index=True, nullable=False)
    merchant_request_id = Column(String(64), nullable=False)

    phone_number = Column(String(15), nullable=False)
    amount = Column(Integer, nullable=False)  # whole shillings
    table_number = Column(String(20), nullable=True)
    items = Column(JSON, nullable=True)  # cart snapshot, never mutated

    status = Column(String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True)
    mpesa_receipt_number = Column(String(64), nullable=True)
    transaction_date = Column(String(20), nullable=True)  # YYYYMMDDHHmmss as sent by Daraja
    result_code = Column(String(16), nullable=True)
    result_description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    order = relationship("Order", back_populates="transaction", uselist=False)

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING.value


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)

    # One order per paid transaction
    transaction_id = Column(Integer, ForeignKey("mpesa_transactions.id"), unique=True, nullable=True)
    transaction = relationship("MpesaTransaction", back_populates="order")

    customer_name = Column(String(120), nullable=False)
    customer_phone = Column(String(15), nullable=True)
    table_number = Column(String(20), nullable=True)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    order = relationship("Order", back_populates="items")

    menu_item_id = Column(Integer, nullable=True)
    name = Column(String(120), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    notes = Column(Text, nullable=True)
