"""Expense store: the collaborator that owns persisted expenses."""

from __future__ import annotations

import abc
import uuid
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import ExpenseRow
from .models import Expense, ExpenseFilter

logger = structlog.get_logger()


class ExpenseStore(abc.ABC):
    """Interface the pipeline needs from wherever expenses live."""

    @abc.abstractmethod
    async def create(
        self,
        account_id: str,
        *,
        title: str,
        amount: Decimal,
        vendor: str,
        occurred_at: datetime,
        source_reference: str | None = None,
    ) -> uuid.UUID:
        """Persist a new expense and return its ID."""

    @abc.abstractmethod
    async def find_similar(self, account_id: str, criteria: ExpenseFilter) -> Expense | None:
        """Return one expense of *account_id* matching every set field of *criteria*."""


def _to_model(row: ExpenseRow) -> Expense:
    return Expense(
        id=row.id,
        account_id=row.account_id,
        title=row.title,
        amount=row.amount,
        vendor=row.vendor,
        occurred_at=row.occurred_at,
        source_reference=row.source_reference,
    )


class SqlExpenseStore(ExpenseStore):
    """Expense store backed by the ``expenses`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session = session_factory

    async def create(
        self,
        account_id: str,
        *,
        title: str,
        amount: Decimal,
        vendor: str,
        occurred_at: datetime,
        source_reference: str | None = None,
    ) -> uuid.UUID:
        row = ExpenseRow(
            account_id=account_id,
            title=title,
            amount=amount,
            vendor=vendor,
            occurred_at=occurred_at,
            source_reference=source_reference,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        logger.info("expense_created", expense_id=str(row.id), amount=str(amount))
        return row.id

    async def find_similar(self, account_id: str, criteria: ExpenseFilter) -> Expense | None:
        stmt = select(ExpenseRow).where(ExpenseRow.account_id == account_id)
        if criteria.title is not None:
            stmt = stmt.where(ExpenseRow.title == criteria.title)
        if criteria.title_prefix is not None:
            prefix = criteria.title_prefix.lower()
            stmt = stmt.where(func.lower(func.substr(ExpenseRow.title, 1, len(prefix))) == prefix)
        if criteria.amount is not None:
            stmt = stmt.where(ExpenseRow.amount == criteria.amount)
        if criteria.occurred_from is not None:
            stmt = stmt.where(ExpenseRow.occurred_at >= criteria.occurred_from)
        if criteria.occurred_to is not None:
            stmt = stmt.where(ExpenseRow.occurred_at < criteria.occurred_to)
        if criteria.occurred_until is not None:
            stmt = stmt.where(ExpenseRow.occurred_at <= criteria.occurred_until)

        async with self._session() as session:
            row = (
                await session.execute(stmt.order_by(ExpenseRow.occurred_at.desc()).limit(1))
            ).scalar_one_or_none()
        return _to_model(row) if row is not None else None

    async def list_for_account(self, account_id: str) -> list[Expense]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(ExpenseRow)
                    .where(ExpenseRow.account_id == account_id)
                    .order_by(ExpenseRow.occurred_at)
                )
            ).scalars().all()
        return [_to_model(r) for r in rows]
