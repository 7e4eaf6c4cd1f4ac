"""Duplicate judge: decides whether a candidate is already a recorded expense."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from .expenses import ExpenseStore
from .ledger import ProcessingLedger
from .models import CandidateExpense, ExpenseFilter, ProcessingOutcome

logger = structlog.get_logger()

FUZZY_TITLE_PREFIX = 20
FUZZY_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def day_bounds(instant: datetime) -> tuple[datetime, datetime]:
    """Return the UTC calendar day containing *instant* as ``[start, end)``."""
    start = instant.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class DuplicateJudge:
    """Three independent checks; any positive one makes the candidate a duplicate.

    1. exact: same title, same amount, same calendar day
    2. message-linked: this message already produced an expense
    3. fuzzy: same amount, same leading title characters, dated within the last 24 hours

    Checks run in that order and stop at the first hit.  The fuzzy check
    will also suppress a genuine second identical purchase on the same
    day; skipping is preferred over a duplicate expense.
    """

    def __init__(
        self,
        ledger: ProcessingLedger,
        expenses: ExpenseStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._expenses = expenses
        self._clock = clock

    async def is_duplicate(
        self,
        account_id: str,
        candidate: CandidateExpense,
        message_id: str,
    ) -> bool:
        check = await self.matching_check(account_id, candidate, message_id)
        if check is not None:
            logger.info("duplicate_detected", message_id=message_id, check=check)
            return True
        return False

    async def matching_check(
        self,
        account_id: str,
        candidate: CandidateExpense,
        message_id: str,
    ) -> str | None:
        """Name of the first check that fires, or ``None``."""
        if await self._exact_match(account_id, candidate):
            return "exact"
        if await self._message_linked(account_id, message_id):
            return "message_linked"
        if await self._fuzzy_recent(account_id, candidate):
            return "fuzzy_recent"
        return None

    async def _exact_match(self, account_id: str, candidate: CandidateExpense) -> bool:
        start, end = day_bounds(candidate.occurred_at)
        found = await self._expenses.find_similar(
            account_id,
            ExpenseFilter(
                title=candidate.title,
                amount=candidate.amount,
                occurred_from=start,
                occurred_to=end,
            ),
        )
        return found is not None

    async def _message_linked(self, account_id: str, message_id: str) -> bool:
        record = await self._ledger.get(account_id, message_id)
        return record is not None and record.outcome == ProcessingOutcome.RECORDED

    async def _fuzzy_recent(self, account_id: str, candidate: CandidateExpense) -> bool:
        now = self._clock()
        found = await self._expenses.find_similar(
            account_id,
            ExpenseFilter(
                title_prefix=candidate.title[:FUZZY_TITLE_PREFIX],
                amount=candidate.amount,
                occurred_from=now - FUZZY_WINDOW,
                occurred_until=now,
            ),
        )
        return found is not None
