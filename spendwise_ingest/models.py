"""Data models for the mailbox-to-expense ingestion pipeline."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ProcessingOutcome(str, Enum):
    """Outcome stored in the ledger for every message an import has seen."""

    RECORDED = "recorded"
    SKIPPED = "skipped"
    FAILED = "failed"


class Credential(BaseModel):
    """OAuth credential scoped to one mailbox owner."""

    account_id: str = Field(description="Owner of the mailbox")
    access_token: SecretStr = Field(description="Bearer token for the mailbox API")
    refresh_token: SecretStr = Field(description="Long-lived token used to mint access tokens")
    scope: str = Field(default="", description="Space-separated OAuth scopes granted")
    token_type: str = Field(default="Bearer", description="Authorization scheme")
    expiry: datetime = Field(description="Instant the access token stops being valid (UTC)")

    def is_expired(self, now: datetime, skew_seconds: int = 0) -> bool:
        return self.expiry <= now + timedelta(seconds=skew_seconds)


class MimePart(BaseModel):
    """One node of a message's MIME tree, body still transfer-encoded."""

    model_config = ConfigDict(frozen=True)

    mime_type: str = Field(description="Content type, e.g. text/plain")
    body: str | None = Field(
        default=None,
        description="base64url-encoded body data, absent for containers and attachments",
    )
    filename: str = Field(default="", description="Attachment filename, empty for inline parts")
    parts: list[MimePart] = Field(default_factory=list, description="Child parts")


class RawMessage(BaseModel):
    """A message as fetched from the mailbox. Transient, never persisted."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(description="Source-assigned identifier, unique within the mailbox")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Header values keyed by lower-cased header name",
    )
    payload: MimePart = Field(description="Root of the MIME part tree")

    @property
    def subject(self) -> str:
        return self.headers.get("subject", "")

    @property
    def sender(self) -> str:
        return self.headers.get("from", "")


class CandidateExpense(BaseModel):
    """Transaction fields extracted from one message."""

    model_config = ConfigDict(frozen=True)

    title: str
    amount: Decimal = Field(ge=0)
    vendor: str
    occurred_at: datetime


class ProcessingRecord(BaseModel):
    """Permanent ledger entry for one (account, message) pair."""

    account_id: str
    message_id: str
    subject: str = ""
    sender_address: str = ""
    processed_at: datetime
    linked_expense_id: uuid.UUID | None = None
    outcome: ProcessingOutcome


class Expense(BaseModel):
    """An expense as held by the expense store."""

    id: uuid.UUID
    account_id: str
    title: str
    amount: Decimal
    vendor: str = ""
    occurred_at: datetime
    source_reference: str | None = None


class ExpenseFilter(BaseModel):
    """Criteria for :meth:`ExpenseStore.find_similar`.

    Unset fields are not constrained.  ``title_prefix`` is compared
    case-insensitively against the same number of leading characters of
    the stored title.  ``occurred_from`` is inclusive, ``occurred_to``
    exclusive and ``occurred_until`` inclusive.
    """

    title: str | None = None
    title_prefix: str | None = None
    amount: Decimal | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None
    occurred_until: datetime | None = None


class MailboxProfile(BaseModel):
    address: str


class ImportRun(BaseModel):
    """An active import; its presence is the per-account single-flight lock."""

    account_id: str
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ImportSummary(BaseModel):
    """Result of one completed import run."""

    account_id: str
    run_id: str
    recorded_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    total_candidates: int = 0
    started_at: datetime
    finished_at: datetime | None = None


class ImportStatus(BaseModel):
    """Answer to the status query for one account."""

    account_id: str
    running: bool
    cooldown_remaining_seconds: int = 0
