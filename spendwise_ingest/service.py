"""IngestionService: builds the pipeline object graph from settings."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import structlog

from .config import IngestSettings
from .content import ContentExtractor
from .credentials import CredentialProvider
from .db.engine import DatabaseEngine
from .duplicates import DuplicateJudge
from .expenses import ExpenseStore, SqlExpenseStore
from .gmail_client import GmailClient
from .ledger import ProcessingLedger
from .locator import MessageLocator
from .orchestrator import ImportOrchestrator
from .runs import InMemoryRunRegistry, RunRegistry, SqlRunRegistry

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IngestionService:
    """Owns the database engine, the HTTP client and every pipeline component.

    Created once per process (API lifespan or CLI invocation); call
    :meth:`start` before use and :meth:`close` on shutdown.  *http* and
    *expenses* may be injected, e.g. an ``httpx.AsyncClient`` over a mock
    transport in tests or a different expense backend.
    """

    def __init__(
        self,
        settings: IngestSettings,
        *,
        http: httpx.AsyncClient | None = None,
        expenses: ExpenseStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.db = DatabaseEngine(settings.database)
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.gmail.timeout_seconds),
        )

        self.credentials = CredentialProvider(
            self.db.session,
            self.http,
            settings.gmail,
            settings.retry,
            clock=clock,
        )
        self.mailbox = GmailClient(self.http, self.credentials, settings.gmail)
        self.ledger = ProcessingLedger(self.db.session, clock=clock)
        self.expenses = expenses or SqlExpenseStore(self.db.session)
        self.registry = self._make_registry(settings)
        self.orchestrator = ImportOrchestrator(
            locator=MessageLocator(self.mailbox, settings.gmail, clock=clock),
            content=ContentExtractor(self.mailbox),
            ledger=self.ledger,
            judge=DuplicateJudge(self.ledger, self.expenses, clock=clock),
            expenses=self.expenses,
            registry=self.registry,
            clock=clock,
        )

    def _make_registry(self, settings: IngestSettings) -> RunRegistry:
        if settings.run_registry == "database":
            return SqlRunRegistry(
                self.db.session,
                settings.cooldown_seconds,
                stale_after_seconds=settings.stale_run_seconds,
            )
        return InMemoryRunRegistry(settings.cooldown_seconds)

    async def start(self) -> None:
        if self.settings.database.create_tables:
            await self.db.create_tables()
        logger.info(
            "ingestion_service_started",
            run_registry=self.settings.run_registry,
            cooldown_seconds=self.settings.cooldown_seconds,
        )

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()
        await self.db.close()
        logger.info("ingestion_service_stopped")
