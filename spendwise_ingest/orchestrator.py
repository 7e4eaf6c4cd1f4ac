"""Import orchestrator: one end-to-end mailbox import per invocation."""

from __future__ import annotations

import email.utils
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .content import ContentExtractor
from .duplicates import DuplicateJudge
from .errors import AlreadyRecorded, IngestError, NoCredential, Revoked, SourceUnavailable
from .expenses import ExpenseStore
from .extractor import extract
from .ledger import ProcessingLedger
from .locator import MessageLocator
from .logging import bind_run_context, clear_run_context
from .models import ImportStatus, ImportSummary, ProcessingOutcome, RawMessage
from .runs import RunRegistry

logger = structlog.get_logger()

SOURCE_REFERENCE_PREFIX = "gmail:"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _sender_address(message: RawMessage) -> str:
    _, address = email.utils.parseaddr(message.sender)
    return address or message.sender


class ImportOrchestrator:
    """Coordinates locator, extractor, judge, expense store and ledger.

    Per account the state machine is ``Idle → Running → Idle``; the run
    registry is the single-flight lock and is always released, even when
    the run aborts.  Candidates are processed strictly in the order the
    locator returned them, and each one that was not already in the
    ledger gets exactly one ledger entry.

    Only account-level errors (:class:`NoCredential`, :class:`Revoked`,
    and :class:`SourceUnavailable` from the locator) abort a run; ledger
    entries written before the abort stay.
    """

    def __init__(
        self,
        *,
        locator: MessageLocator,
        content: ContentExtractor,
        ledger: ProcessingLedger,
        judge: DuplicateJudge,
        expenses: ExpenseStore,
        registry: RunRegistry,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._locator = locator
        self._content = content
        self._ledger = ledger
        self._judge = judge
        self._expenses = expenses
        self._registry = registry
        self._clock = clock

    async def status(self, account_id: str) -> ImportStatus:
        return await self._registry.status(account_id, now=self._clock())

    async def start_import(self, account_id: str) -> ImportSummary:
        """Run one import for *account_id*.

        Raises :class:`AlreadyRunning` without doing any work when a run
        is active or cooling down.
        """
        run = await self._registry.acquire(account_id, now=self._clock())
        bind_run_context(account_id=account_id, run_id=run.run_id)
        summary = ImportSummary(
            account_id=account_id,
            run_id=run.run_id,
            started_at=run.started_at,
        )

        try:
            profile = await self._locator.mailbox_profile(account_id)
            logger.info("import_started", mailbox=profile.address)

            candidates = await self._locator.find_candidates(account_id)
            summary.total_candidates = len(candidates)

            for message_id in candidates:
                outcome = await self._process(account_id, message_id)
                if outcome == ProcessingOutcome.RECORDED:
                    summary.recorded_count += 1
                elif outcome == ProcessingOutcome.SKIPPED:
                    summary.skipped_count += 1
                else:
                    summary.failed_count += 1

            summary.finished_at = self._clock()
            logger.info(
                "import_completed",
                total_candidates=summary.total_candidates,
                recorded=summary.recorded_count,
                skipped=summary.skipped_count,
                failed=summary.failed_count,
            )
            return summary
        except IngestError as exc:
            logger.warning(
                "import_aborted",
                error_type=type(exc).__name__,
                error=str(exc),
                recorded=summary.recorded_count,
            )
            raise
        finally:
            await self._registry.release(run, now=self._clock())
            clear_run_context()

    # ------------------------------------------------------------------
    # Per-message pipeline
    # ------------------------------------------------------------------

    async def _process(self, account_id: str, message_id: str) -> ProcessingOutcome:
        if await self._ledger.has_processed(account_id, message_id):
            logger.debug("message_already_processed", message_id=message_id)
            return ProcessingOutcome.SKIPPED

        try:
            return await self._convert(account_id, message_id)
        except (NoCredential, Revoked):
            raise
        except Exception:
            logger.exception("message_processing_failed", message_id=message_id)
            return await self._record(account_id, message_id, ProcessingOutcome.FAILED)

    async def _convert(self, account_id: str, message_id: str) -> ProcessingOutcome:
        try:
            message = await self._content.fetch(account_id, message_id)
        except SourceUnavailable as exc:
            logger.warning("message_fetch_failed", message_id=message_id, error=str(exc))
            return await self._record(account_id, message_id, ProcessingOutcome.FAILED)

        text = self._content.to_plain_text(message)
        if not text.strip():
            logger.info("message_without_text", message_id=message_id)
            return await self._record(
                account_id, message_id, ProcessingOutcome.SKIPPED, message=message
            )

        candidate = extract(text, message.headers, now=self._clock())
        if candidate.amount <= 0:
            logger.info("message_without_amount", message_id=message_id)
            return await self._record(
                account_id, message_id, ProcessingOutcome.FAILED, message=message
            )

        if await self._judge.is_duplicate(account_id, candidate, message_id):
            return await self._record(
                account_id, message_id, ProcessingOutcome.SKIPPED, message=message
            )

        expense_id = await self._expenses.create(
            account_id,
            title=candidate.title,
            amount=candidate.amount,
            vendor=candidate.vendor,
            occurred_at=candidate.occurred_at,
            source_reference=f"{SOURCE_REFERENCE_PREFIX}{message_id}",
        )
        logger.info(
            "message_recorded",
            message_id=message_id,
            expense_id=str(expense_id),
            amount=str(candidate.amount),
        )
        return await self._record(
            account_id,
            message_id,
            ProcessingOutcome.RECORDED,
            message=message,
            expense_id=expense_id,
        )

    async def _record(
        self,
        account_id: str,
        message_id: str,
        outcome: ProcessingOutcome,
        *,
        message: RawMessage | None = None,
        expense_id=None,
    ) -> ProcessingOutcome:
        try:
            await self._ledger.record(
                account_id,
                message_id,
                subject=message.subject if message is not None else "",
                sender=_sender_address(message) if message is not None else "",
                outcome=outcome,
                linked_expense_id=expense_id,
            )
        except AlreadyRecorded:
            logger.info("ledger_write_raced", message_id=message_id, outcome=outcome.value)
        return outcome
