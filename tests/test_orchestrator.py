"""Tests for spendwise_ingest.orchestrator: end-to-end runs over a fake mailbox."""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from spendwise_ingest.content import ContentExtractor
from spendwise_ingest.duplicates import DuplicateJudge
from spendwise_ingest.errors import AlreadyRunning, Revoked, SourceUnavailable
from spendwise_ingest.expenses import SqlExpenseStore
from spendwise_ingest.ledger import ProcessingLedger
from spendwise_ingest.locator import MessageLocator
from spendwise_ingest.models import ProcessingOutcome
from spendwise_ingest.orchestrator import ImportOrchestrator
from spendwise_ingest.runs import InMemoryRunRegistry
from tests.conftest import NOW, FakeMailbox, raw_message, receipt_text


class Pipeline:
    """The orchestrator wired to real SQL stores and a fake mailbox."""

    def __init__(self, db, clock, gmail_config, mailbox: FakeMailbox) -> None:
        self.mailbox = mailbox
        self.clock = clock
        self.ledger = ProcessingLedger(db.session, clock=clock)
        self.expenses = SqlExpenseStore(db.session)
        self.registry = InMemoryRunRegistry(cooldown_seconds=60)
        self.orchestrator = ImportOrchestrator(
            locator=MessageLocator(mailbox, gmail_config, clock=clock),
            content=ContentExtractor(mailbox),
            ledger=self.ledger,
            judge=DuplicateJudge(self.ledger, self.expenses, clock=clock),
            expenses=self.expenses,
            registry=self.registry,
            clock=clock,
        )


def _receipts(count: int) -> dict:
    return {
        f"m{i}": raw_message(f"m{i}", plain=receipt_text(f"Order number {i}", f"{100 + i}"))
        for i in range(1, count + 1)
    }


@pytest.fixture
def make_pipeline(db, clock, gmail_config):
    def _make(messages: dict, mailbox_cls=FakeMailbox, **mailbox_kwargs) -> Pipeline:
        mailbox_kwargs.setdefault("default_ids", list(messages))
        return Pipeline(db, clock, gmail_config, mailbox_cls(messages, **mailbox_kwargs))

    return _make


class TestStartImport:
    @pytest.mark.asyncio
    async def test_records_each_receipt(self, make_pipeline):
        pipeline = make_pipeline(_receipts(2))

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.total_candidates == 2
        assert summary.recorded_count == 2
        assert summary.skipped_count == 0
        assert summary.failed_count == 0
        assert summary.finished_at == NOW

        expenses = await pipeline.expenses.list_for_account("acct-1")
        assert sorted(e.amount for e in expenses) == [Decimal("101"), Decimal("102")]
        assert {e.source_reference for e in expenses} == {"gmail:m1", "gmail:m2"}

        record = await pipeline.ledger.get("acct-1", "m1")
        assert record.outcome == ProcessingOutcome.RECORDED
        assert record.linked_expense_id in {e.id for e in expenses}
        assert record.subject == "Your receipt"
        assert record.sender_address == "orders@bluetokai.com"

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, make_pipeline, clock):
        pipeline = make_pipeline(_receipts(2))
        await pipeline.orchestrator.start_import("acct-1")

        clock.advance(seconds=120)
        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.recorded_count == 0
        assert summary.skipped_count == 2
        assert summary.total_candidates == 2
        assert len(await pipeline.expenses.list_for_account("acct-1")) == 2
        assert len(await pipeline.ledger.list_records("acct-1")) == 2
        # Already-processed messages are not fetched again
        assert pipeline.mailbox.fetched == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_empty_mailbox(self, make_pipeline):
        summary = await make_pipeline({}).orchestrator.start_import("acct-1")
        assert summary.total_candidates == 0
        assert summary.recorded_count == 0


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_one_failing_fetch_does_not_stop_the_run(self, make_pipeline):
        pipeline = make_pipeline(_receipts(5), failing={"m3"})

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.recorded_count == 4
        assert summary.failed_count == 1
        assert summary.total_candidates == 5
        assert len(await pipeline.ledger.list_records("acct-1")) == 5
        failed = await pipeline.ledger.get("acct-1", "m3")
        assert failed.outcome == ProcessingOutcome.FAILED
        assert failed.linked_expense_id is None

    @pytest.mark.asyncio
    async def test_message_without_amount_fails(self, make_pipeline):
        pipeline = make_pipeline(
            {"m1": raw_message("m1", plain="Hello there, your newsletter is here.")}
        )

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.failed_count == 1
        assert await pipeline.expenses.list_for_account("acct-1") == []
        record = await pipeline.ledger.get("acct-1", "m1")
        assert record.outcome == ProcessingOutcome.FAILED

    @pytest.mark.asyncio
    async def test_message_without_text_skipped(self, make_pipeline):
        pipeline = make_pipeline({"m1": raw_message("m1")})

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.skipped_count == 1
        record = await pipeline.ledger.get("acct-1", "m1")
        assert record.outcome == ProcessingOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_duplicate_of_existing_expense_skipped(self, make_pipeline):
        pipeline = make_pipeline(
            {"m1": raw_message("m1", plain="Item: Coffee Shop\nTotal: ₹150\n")}
        )
        await pipeline.expenses.create(
            "acct-1",
            title="Coffee Shop",
            amount=Decimal("150"),
            vendor="",
            occurred_at=NOW,
        )

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.skipped_count == 1
        assert len(await pipeline.expenses.list_for_account("acct-1")) == 1
        record = await pipeline.ledger.get("acct-1", "m1")
        assert record.outcome == ProcessingOutcome.SKIPPED
        assert record.linked_expense_id is None

    @pytest.mark.asyncio
    async def test_resent_receipt_with_sub_cent_amount_skipped(self, make_pipeline):
        text = "Item: Metro card top-up\nTotal: ₹10.999\n"
        pipeline = make_pipeline(
            {"m1": raw_message("m1", plain=text), "m2": raw_message("m2", plain=text)}
        )

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.recorded_count == 1
        assert summary.skipped_count == 1
        [expense] = await pipeline.expenses.list_for_account("acct-1")
        assert expense.amount == Decimal("11.00")

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_failure(self, make_pipeline):
        pipeline = make_pipeline(_receipts(2))
        pipeline.expenses.create = AsyncMock(side_effect=[RuntimeError("disk full"), uuid.uuid4()])

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.failed_count == 1
        assert summary.recorded_count == 1
        assert (await pipeline.ledger.get("acct-1", "m1")).outcome == ProcessingOutcome.FAILED

    @pytest.mark.asyncio
    async def test_ledger_race_is_benign(self, make_pipeline):
        pipeline = make_pipeline(_receipts(1))
        await pipeline.ledger.record("acct-1", "m1", outcome=ProcessingOutcome.SKIPPED)
        # Simulate a concurrent writer landing between the check and the write
        pipeline.ledger.has_processed = AsyncMock(return_value=False)

        summary = await pipeline.orchestrator.start_import("acct-1")

        assert summary.total_candidates == 1
        record = await pipeline.ledger.get("acct-1", "m1")
        assert record.outcome == ProcessingOutcome.SKIPPED


class TestAbort:
    @pytest.mark.asyncio
    async def test_locator_failure_aborts_and_releases(self, make_pipeline, clock):
        class BrokenMailbox(FakeMailbox):
            async def search(self, account_id, query, *, max_results):
                raise SourceUnavailable("Mailbox API returned 503")

        pipeline = make_pipeline({}, BrokenMailbox)

        with pytest.raises(SourceUnavailable):
            await pipeline.orchestrator.start_import("acct-1")

        status = await pipeline.orchestrator.status("acct-1")
        assert status.running is False
        assert status.cooldown_remaining_seconds == 60

        clock.advance(seconds=61)
        with pytest.raises(SourceUnavailable):
            await pipeline.orchestrator.start_import("acct-1")

    @pytest.mark.asyncio
    async def test_revoked_mid_run_keeps_earlier_entries(self, make_pipeline):
        class RevokingMailbox(FakeMailbox):
            async def get_message(self, account_id, message_id):
                if message_id == "m2":
                    raise Revoked(account_id)
                return await super().get_message(account_id, message_id)

        pipeline = make_pipeline(_receipts(3), RevokingMailbox)

        with pytest.raises(Revoked):
            await pipeline.orchestrator.start_import("acct-1")

        assert await pipeline.ledger.has_processed("acct-1", "m1") is True
        assert await pipeline.ledger.has_processed("acct-1", "m2") is False
        assert await pipeline.ledger.has_processed("acct-1", "m3") is False
        status = await pipeline.orchestrator.status("acct-1")
        assert status.running is False


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_import_for_same_account_refused(self, make_pipeline):
        gate = asyncio.Event()
        searching = asyncio.Event()

        class SlowMailbox(FakeMailbox):
            async def search(self, account_id, query, *, max_results):
                if account_id == "acct-1":
                    searching.set()
                    await gate.wait()
                return await super().search(account_id, query, max_results=max_results)

        pipeline = make_pipeline(_receipts(1), SlowMailbox)

        first = asyncio.create_task(pipeline.orchestrator.start_import("acct-1"))
        await searching.wait()

        with pytest.raises(AlreadyRunning):
            await pipeline.orchestrator.start_import("acct-1")
        status = await pipeline.orchestrator.status("acct-1")
        assert status.running is True

        other = await pipeline.orchestrator.start_import("acct-2")
        assert other.recorded_count == 1

        gate.set()
        summary = await first
        assert summary.recorded_count == 1

    @pytest.mark.asyncio
    async def test_cooldown_after_completed_run(self, make_pipeline, clock):
        pipeline = make_pipeline(_receipts(1))
        await pipeline.orchestrator.start_import("acct-1")

        clock.advance(seconds=15)
        with pytest.raises(AlreadyRunning) as exc_info:
            await pipeline.orchestrator.start_import("acct-1")
        assert exc_info.value.cooldown_remaining_seconds == 45
