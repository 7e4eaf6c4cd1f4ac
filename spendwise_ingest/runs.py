"""Single-flight registries for import runs.

A registry hands out at most one :class:`ImportRun` per account at a time
and refuses a new one until the cooldown after the previous run has
elapsed.  :class:`InMemoryRunRegistry` serves a single process;
:class:`SqlRunRegistry` coordinates several service instances through a
conditional UPDATE on the ``import_runs`` table.
"""

from __future__ import annotations

import abc
import asyncio
import math
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import ImportRunRow
from .errors import AlreadyRunning
from .models import ImportRun, ImportStatus

logger = structlog.get_logger()


class RunRegistry(abc.ABC):
    def __init__(self, cooldown_seconds: int) -> None:
        self._cooldown = timedelta(seconds=cooldown_seconds)

    @property
    def cooldown_seconds(self) -> int:
        return int(self._cooldown.total_seconds())

    def _remaining(self, finished_at: datetime | None, now: datetime) -> int:
        if finished_at is None:
            return 0
        left = (finished_at + self._cooldown - now).total_seconds()
        return max(0, math.ceil(left))

    @abc.abstractmethod
    async def acquire(self, account_id: str, *, now: datetime) -> ImportRun:
        """Start a run for *account_id* or raise :class:`AlreadyRunning`."""

    @abc.abstractmethod
    async def release(self, run: ImportRun, *, now: datetime) -> None:
        """End *run*; its finish time starts the cooldown."""

    @abc.abstractmethod
    async def status(self, account_id: str, *, now: datetime) -> ImportStatus: ...


class InMemoryRunRegistry(RunRegistry):
    """Process-local registry."""

    def __init__(self, cooldown_seconds: int) -> None:
        super().__init__(cooldown_seconds)
        self._active: dict[str, ImportRun] = {}
        self._finished_at: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, account_id: str, *, now: datetime) -> ImportRun:
        async with self._lock:
            if account_id in self._active:
                raise AlreadyRunning(account_id, self.cooldown_seconds)
            remaining = self._remaining(self._finished_at.get(account_id), now)
            if remaining > 0:
                raise AlreadyRunning(account_id, remaining)
            run = ImportRun(account_id=account_id, started_at=now)
            self._active[account_id] = run
            logger.debug("import_run_claimed", account_id=account_id, run_id=run.run_id)
            return run

    async def release(self, run: ImportRun, *, now: datetime) -> None:
        async with self._lock:
            current = self._active.get(run.account_id)
            if current is not None and current.run_id == run.run_id:
                del self._active[run.account_id]
            self._finished_at[run.account_id] = now

    async def status(self, account_id: str, *, now: datetime) -> ImportStatus:
        if account_id in self._active:
            return ImportStatus(
                account_id=account_id,
                running=True,
                cooldown_remaining_seconds=self.cooldown_seconds,
            )
        return ImportStatus(
            account_id=account_id,
            running=False,
            cooldown_remaining_seconds=self._remaining(self._finished_at.get(account_id), now),
        )


class SqlRunRegistry(RunRegistry):
    """Registry shared by every instance pointing at the same database.

    An active run older than *stale_after_seconds* is treated as abandoned
    (its process died without releasing) and may be taken over.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cooldown_seconds: int,
        *,
        stale_after_seconds: int = 3600,
    ) -> None:
        super().__init__(cooldown_seconds)
        self._session = session_factory
        self._stale_after = timedelta(seconds=stale_after_seconds)

    async def acquire(self, account_id: str, *, now: datetime) -> ImportRun:
        run = ImportRun(account_id=account_id, started_at=now)
        claim = (
            update(ImportRunRow)
            .where(
                ImportRunRow.account_id == account_id,
                or_(
                    and_(
                        ImportRunRow.active.is_(False),
                        or_(
                            ImportRunRow.finished_at.is_(None),
                            ImportRunRow.finished_at <= now - self._cooldown,
                        ),
                    ),
                    and_(
                        ImportRunRow.active.is_(True),
                        ImportRunRow.started_at <= now - self._stale_after,
                    ),
                ),
            )
            .values(active=True, run_id=run.run_id, started_at=now)
            .execution_options(synchronize_session=False)
        )

        async with self._session() as session:
            result = await session.execute(claim)
            if result.rowcount == 1:
                await session.commit()
                logger.debug("import_run_claimed", account_id=account_id, run_id=run.run_id)
                return run

            row = await session.get(ImportRunRow, account_id)
            if row is None:
                session.add(
                    ImportRunRow(
                        account_id=account_id,
                        active=True,
                        run_id=run.run_id,
                        started_at=now,
                    )
                )
                try:
                    await session.commit()
                    logger.debug("import_run_claimed", account_id=account_id, run_id=run.run_id)
                    return run
                except IntegrityError:
                    # Another instance created the row first
                    await session.rollback()
                    row = await session.get(ImportRunRow, account_id)

        raise AlreadyRunning(account_id, self._row_remaining(row, now))

    async def release(self, run: ImportRun, *, now: datetime) -> None:
        async with self._session() as session:
            await session.execute(
                update(ImportRunRow)
                .where(
                    ImportRunRow.account_id == run.account_id,
                    ImportRunRow.run_id == run.run_id,
                )
                .values(active=False, finished_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def status(self, account_id: str, *, now: datetime) -> ImportStatus:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ImportRunRow).where(ImportRunRow.account_id == account_id)
                )
            ).scalar_one_or_none()
        return ImportStatus(
            account_id=account_id,
            running=bool(row is not None and row.active),
            cooldown_remaining_seconds=self._row_remaining(row, now),
        )

    def _row_remaining(self, row: ImportRunRow | None, now: datetime) -> int:
        if row is None:
            return 0
        if row.active:
            return self.cooldown_seconds
        return self._remaining(row.finished_at, now)
