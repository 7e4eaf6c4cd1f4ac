"""Processing ledger: permanent, append-only record of every message an import has seen."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import ProcessedMessage
from .errors import AlreadyRecorded
from .models import ProcessingOutcome, ProcessingRecord

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_model(row: ProcessedMessage) -> ProcessingRecord:
    return ProcessingRecord(
        account_id=row.account_id,
        message_id=row.message_id,
        subject=row.subject,
        sender_address=row.sender_address,
        processed_at=row.processed_at,
        linked_expense_id=row.linked_expense_id,
        outcome=ProcessingOutcome(row.outcome),
    )


class ProcessingLedger:
    """Idempotency authority keyed by (account, message).

    Uniqueness is enforced by the database constraint, so concurrent
    writers for the same pair leave exactly one row behind and every
    loser observes :class:`AlreadyRecorded`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session_factory
        self._clock = clock

    async def has_processed(self, account_id: str, message_id: str) -> bool:
        return await self.get(account_id, message_id) is not None

    async def get(self, account_id: str, message_id: str) -> ProcessingRecord | None:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ProcessedMessage).where(
                        ProcessedMessage.account_id == account_id,
                        ProcessedMessage.message_id == message_id,
                    )
                )
            ).scalar_one_or_none()
        return _to_model(row) if row is not None else None

    async def record(
        self,
        account_id: str,
        message_id: str,
        *,
        subject: str = "",
        sender: str = "",
        outcome: ProcessingOutcome,
        linked_expense_id: uuid.UUID | None = None,
    ) -> ProcessingRecord:
        """Insert the one and only record for (*account_id*, *message_id*).

        Raises :class:`AlreadyRecorded` if the pair already exists; the
        existing record is left untouched.
        """
        if outcome == ProcessingOutcome.RECORDED and linked_expense_id is None:
            raise ValueError("a recorded outcome must link the created expense")

        row = ProcessedMessage(
            account_id=account_id,
            message_id=message_id,
            subject=subject,
            sender_address=sender,
            processed_at=self._clock(),
            linked_expense_id=linked_expense_id,
            outcome=outcome.value,
        )
        async with self._session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AlreadyRecorded(account_id, message_id) from exc

        logger.debug("ledger_recorded", message_id=message_id, outcome=outcome.value)
        return _to_model(row)

    async def list_records(
        self,
        account_id: str,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ProcessingRecord]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(ProcessedMessage)
                    .where(ProcessedMessage.account_id == account_id)
                    .order_by(ProcessedMessage.processed_at.desc(), ProcessedMessage.message_id)
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
        return [_to_model(r) for r in rows]

    async def clear(self, account_id: str) -> int:
        """Delete every record for *account_id*.  Testing only; never called by imports."""
        async with self._session() as session:
            result = await session.execute(
                delete(ProcessedMessage).where(ProcessedMessage.account_id == account_id)
            )
            await session.commit()
        logger.warning("ledger_cleared", account_id=account_id, deleted=result.rowcount)
        return result.rowcount
