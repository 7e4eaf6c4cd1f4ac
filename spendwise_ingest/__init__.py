"""Spendwise mail ingestion: turn receipt emails into expenses, once per message."""

from .config import DatabaseConfig, GmailConfig, IngestSettings, RetryConfig
from .content import ContentExtractor, to_plain_text
from .credentials import CredentialProvider
from .duplicates import DuplicateJudge
from .errors import (
    AlreadyRecorded,
    AlreadyRunning,
    IngestError,
    NoCredential,
    Revoked,
    SourceUnavailable,
)
from .expenses import ExpenseStore, SqlExpenseStore
from .extractor import extract
from .gmail_client import GmailClient
from .ledger import ProcessingLedger
from .locator import MessageLocator
from .models import (
    CandidateExpense,
    Credential,
    ImportStatus,
    ImportSummary,
    MimePart,
    ProcessingOutcome,
    ProcessingRecord,
    RawMessage,
)
from .orchestrator import ImportOrchestrator
from .runs import InMemoryRunRegistry, RunRegistry, SqlRunRegistry
from .service import IngestionService

__all__ = [
    "AlreadyRecorded",
    "AlreadyRunning",
    "CandidateExpense",
    "ContentExtractor",
    "Credential",
    "CredentialProvider",
    "DatabaseConfig",
    "DuplicateJudge",
    "ExpenseStore",
    "GmailClient",
    "GmailConfig",
    "ImportOrchestrator",
    "ImportStatus",
    "ImportSummary",
    "InMemoryRunRegistry",
    "IngestError",
    "IngestSettings",
    "IngestionService",
    "MessageLocator",
    "MimePart",
    "NoCredential",
    "ProcessingLedger",
    "ProcessingOutcome",
    "ProcessingRecord",
    "RawMessage",
    "RetryConfig",
    "Revoked",
    "RunRegistry",
    "SourceUnavailable",
    "SqlExpenseStore",
    "SqlRunRegistry",
    "extract",
    "to_plain_text",
]
