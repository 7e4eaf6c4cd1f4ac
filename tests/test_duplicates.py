"""Tests for spendwise_ingest.duplicates and the SQL expense store it queries."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from spendwise_ingest.duplicates import DuplicateJudge, day_bounds
from spendwise_ingest.expenses import SqlExpenseStore
from spendwise_ingest.ledger import ProcessingLedger
from spendwise_ingest.models import CandidateExpense, ExpenseFilter, ProcessingOutcome
from tests.conftest import NOW


@pytest.fixture
def ledger(db, clock) -> ProcessingLedger:
    return ProcessingLedger(db.session, clock=clock)


@pytest.fixture
def expenses(db) -> SqlExpenseStore:
    return SqlExpenseStore(db.session)


@pytest.fixture
def judge(ledger, expenses, clock) -> DuplicateJudge:
    return DuplicateJudge(ledger, expenses, clock=clock)


def _candidate(title="Coffee Shop", amount="150", occurred_at=NOW) -> CandidateExpense:
    return CandidateExpense(
        title=title,
        amount=Decimal(amount),
        vendor="Blue Tokai",
        occurred_at=occurred_at,
    )


async def _add(expenses, title="Coffee Shop", amount="150", occurred_at=NOW):
    return await expenses.create(
        "acct-1",
        title=title,
        amount=Decimal(amount),
        vendor="Blue Tokai",
        occurred_at=occurred_at,
    )


class TestDayBounds:
    def test_utc_calendar_day(self):
        start, end = day_bounds(datetime(2025, 6, 15, 23, 59, tzinfo=UTC))
        assert start == datetime(2025, 6, 15, tzinfo=UTC)
        assert end == datetime(2025, 6, 16, tzinfo=UTC)


class TestExactMatch:
    @pytest.mark.asyncio
    async def test_same_title_amount_and_day(self, judge, expenses, ledger):
        await _add(expenses, occurred_at=NOW - timedelta(hours=3))

        check = await judge.matching_check("acct-1", _candidate(), "m-new")

        assert check == "exact"
        # Detected from the expense store alone, independent of the ledger
        assert await ledger.get("acct-1", "m-new") is None

    @pytest.mark.asyncio
    async def test_exact_takes_precedence_over_message_link(self, judge, expenses, ledger):
        expense_id = await _add(expenses)
        await ledger.record(
            "acct-1", "m1", outcome=ProcessingOutcome.RECORDED, linked_expense_id=expense_id
        )
        assert await judge.matching_check("acct-1", _candidate(), "m1") == "exact"

    @pytest.mark.asyncio
    async def test_other_day_is_not_exact(self, judge, expenses):
        await _add(expenses, occurred_at=NOW - timedelta(days=2))
        assert await judge.matching_check("acct-1", _candidate(), "m-new") is None

    @pytest.mark.asyncio
    async def test_other_account_ignored(self, judge, expenses):
        await expenses.create(
            "acct-2", title="Coffee Shop", amount=Decimal("150"), vendor="", occurred_at=NOW
        )
        assert await judge.is_duplicate("acct-1", _candidate(), "m-new") is False


class TestMessageLinked:
    @pytest.mark.asyncio
    async def test_message_already_produced_expense(self, judge, ledger):
        await ledger.record(
            "acct-1", "m1", outcome=ProcessingOutcome.RECORDED, linked_expense_id=uuid.uuid4()
        )
        check = await judge.matching_check("acct-1", _candidate("Train tickets", "980"), "m1")
        assert check == "message_linked"

    @pytest.mark.asyncio
    async def test_skipped_record_is_not_a_link(self, judge, ledger):
        await ledger.record("acct-1", "m1", outcome=ProcessingOutcome.SKIPPED)
        assert await judge.is_duplicate("acct-1", _candidate("Train tickets", "980"), "m1") is False


class TestFuzzyRecent:
    @pytest.mark.asyncio
    async def test_same_amount_and_title_prefix_within_a_day(self, judge, expenses):
        await _add(
            expenses,
            title="Swiggy order from Meghana Foods",
            amount="450",
            occurred_at=NOW - timedelta(hours=3),
        )
        candidate = _candidate("SWIGGY ORDER FROM MEGHANA BIRYANI", "450")
        assert await judge.matching_check("acct-1", candidate, "m-new") == "fuzzy_recent"

    @pytest.mark.asyncio
    async def test_outside_window(self, judge, expenses):
        await _add(
            expenses,
            title="Swiggy order from Meghana Foods",
            amount="450",
            occurred_at=NOW - timedelta(hours=30),
        )
        candidate = _candidate("Swiggy order from Meghana Biryani", "450")
        assert await judge.is_duplicate("acct-1", candidate, "m-new") is False

    @pytest.mark.asyncio
    async def test_future_dated_expense_is_not_recent(self, judge, expenses):
        await _add(
            expenses,
            title="Flight to Goa booking",
            amount="4500",
            occurred_at=NOW + timedelta(days=30),
        )
        candidate = _candidate("Flight to Goa booking ref 2", "4500")
        assert await judge.matching_check("acct-1", candidate, "m-new") is None

    @pytest.mark.asyncio
    async def test_expense_stamped_now_is_inside_window(self, judge, expenses):
        await _add(expenses, title="Swiggy order from Meghana Foods", amount="450", occurred_at=NOW)
        candidate = _candidate("Swiggy order from Meghana Biryani", "450", NOW - timedelta(days=3))
        assert await judge.matching_check("acct-1", candidate, "m-new") == "fuzzy_recent"

    @pytest.mark.asyncio
    async def test_different_amount(self, judge, expenses):
        await _add(expenses, title="Swiggy order from Meghana Foods", amount="450")
        candidate = _candidate("Swiggy order from Meghana Foods", "451")
        assert await judge.is_duplicate("acct-1", candidate, "m-new") is False


class TestSqlExpenseStore:
    @pytest.mark.asyncio
    async def test_create_and_list(self, expenses):
        expense_id = await expenses.create(
            "acct-1",
            title="Lunch",
            amount=Decimal("320.50"),
            vendor="Truffles",
            occurred_at=NOW,
            source_reference="gmail:m1",
        )
        [expense] = await expenses.list_for_account("acct-1")
        assert expense.id == expense_id
        assert expense.amount == Decimal("320.50")
        assert expense.source_reference == "gmail:m1"
        assert expense.occurred_at == NOW

    @pytest.mark.asyncio
    async def test_find_similar_half_open_range(self, expenses):
        await _add(expenses, occurred_at=datetime(2025, 6, 16, tzinfo=UTC))
        start, end = day_bounds(NOW)
        found = await expenses.find_similar(
            "acct-1", ExpenseFilter(title="Coffee Shop", occurred_from=start, occurred_to=end)
        )
        assert found is None

    @pytest.mark.asyncio
    async def test_find_similar_inclusive_upper_bound(self, expenses):
        await _add(expenses, occurred_at=NOW)
        found = await expenses.find_similar(
            "acct-1", ExpenseFilter(title="Coffee Shop", occurred_until=NOW)
        )
        assert found is not None
        missing = await expenses.find_similar(
            "acct-1", ExpenseFilter(title="Coffee Shop", occurred_to=NOW)
        )
        assert missing is None
