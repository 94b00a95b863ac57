from __future__ import annotations

from typing import Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restopay.models import MpesaTransaction, TransactionStatus


class TransactionStore:
    """Durable record of every STK push, keyed by CheckoutRequestID.

    Rows leave PENDING through a compare-and-set update so that, of a racing
    callback and status poll, exactly one caller is told it won.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker
        self._logger = structlog.get_logger().bind(component="transaction_store")

    async def create_pending(
        self,
        *,
        checkout_request_id: str,
        merchant_request_id: str,
        phone_number: str,
        amount: int,
        table_number: str,
        items: Optional[list] = None,
    ) -> MpesaTransaction:
        async with self.sessionmaker() as session:
            transaction = MpesaTransaction(
                checkout_request_id=checkout_request_id,
                merchant_request_id=merchant_request_id,
                phone_number=phone_number,
                amount=amount,
                table_number=table_number,
                items=items or [],
                status=TransactionStatus.PENDING.value,
            )
            session.add(transaction)
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            await session.refresh(transaction)
            self._logger.info("transaction_created", checkout_request_id=checkout_request_id, amount=amount)
            return transaction

    async def get(self, checkout_request_id: str) -> Optional[MpesaTransaction]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(MpesaTransaction).where(MpesaTransaction.checkout_request_id == checkout_request_id)
            )
            return result.scalar_one_or_none()

    async def list_recent(self, status: Optional[str] = None, limit: int = 50) -> Sequence[MpesaTransaction]:
        query = select(MpesaTransaction).order_by(MpesaTransaction.created_at.desc(), MpesaTransaction.id.desc())
        if status:
            query = query.where(MpesaTransaction.status == status)
        async with self.sessionmaker() as session:
            result = await session.execute(query.limit(limit))
            return result.scalars().all()

    async def _transition(self, checkout_request_id: str, status: TransactionStatus, **values) -> bool:
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(MpesaTransaction)
                .where(
                    MpesaTransaction.checkout_request_id == checkout_request_id,
                    MpesaTransaction.status == TransactionStatus.PENDING.value,
                )
                .values(status=status.value, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        won = result.rowcount == 1
        self._logger.info(
            "transaction_transition",
            checkout_request_id=checkout_request_id,
            status=status.value,
            applied=won,
        )
        return won

    async def mark_completed(
        self,
        checkout_request_id: str,
        *,
        receipt_number: Optional[str],
        transaction_date: Optional[str] = None,
        result_description: Optional[str] = None,
    ) -> bool:
        """PENDING -> COMPLETED. Returns False when the row was already terminal or missing."""
        values = {"result_code": "0", "result_description": result_description}
        if receipt_number:
            values["mpesa_receipt_number"] = receipt_number
        if transaction_date:
            values["transaction_date"] = str(transaction_date)
        return await self._transition(checkout_request_id, TransactionStatus.COMPLETED, **values)

    async def mark_failed(
        self,
        checkout_request_id: str,
        *,
        result_code: Optional[str],
        result_description: Optional[str],
    ) -> bool:
        """PENDING -> FAILED. Returns False when the row was already terminal or missing."""
        return await self._transition(
            checkout_request_id,
            TransactionStatus.FAILED,
            result_code=result_code,
            result_description=result_description,
        )
