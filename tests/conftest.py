"""Shared test fixtures for the ingestion test suite."""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import pytest

from spendwise_ingest.config import DatabaseConfig, GmailConfig, IngestSettings, RetryConfig
from spendwise_ingest.db.engine import DatabaseEngine
from spendwise_ingest.errors import SourceUnavailable
from spendwise_ingest.gmail_client import _to_message
from spendwise_ingest.models import MailboxProfile, RawMessage

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def gmail_config() -> GmailConfig:
    return GmailConfig(
        client_id="test-client",
        client_secret="test-secret",
        token_url="https://oauth.test/token",
        api_base_url="https://mail.test/gmail/v1",
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=2, initial_wait_seconds=0.01, max_wait_seconds=0.02)


@pytest.fixture
def database_config(tmp_path) -> DatabaseConfig:
    # A file database gives every session its own connection
    return DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def settings(gmail_config, retry_config, database_config) -> IngestSettings:
    return IngestSettings(
        cooldown_seconds=60,
        log_json=False,
        gmail=gmail_config,
        retry=retry_config,
        database=database_config,
    )


@pytest.fixture
async def db(database_config):
    engine = DatabaseEngine(database_config)
    await engine.create_tables()
    yield engine
    await engine.close()


# ------------------------------------------------------------------
# Gmail API payload builders
# ------------------------------------------------------------------


def b64url(text: str) -> str:
    """Encode *text* the way the Gmail API does: base64url, no padding."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def text_part(text: str, mime_type: str = "text/plain", filename: str = "") -> dict:
    return {
        "mimeType": mime_type,
        "filename": filename,
        "body": {"size": len(text), "data": b64url(text)},
    }


def gmail_message(
    message_id: str,
    *,
    subject: str = "Your receipt",
    sender: str = "Blue Tokai <orders@bluetokai.com>",
    plain: str | None = None,
    html: str | None = None,
    parts: list[dict] | None = None,
) -> dict:
    """Build a ``users.messages.get?format=full`` response body."""
    if parts is None:
        parts = []
        if plain is not None:
            parts.append(text_part(plain))
        if html is not None:
            parts.append(text_part(html, "text/html"))
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "payload": {
            "mimeType": "multipart/alternative",
            "filename": "",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "To", "value": "me@example.com"},
            ],
            "body": {"size": 0},
            "parts": parts,
        },
    }


def raw_message(message_id: str, **kwargs) -> RawMessage:
    return _to_message(message_id, gmail_message(message_id, **kwargs))


def receipt_text(item: str, amount: str, *, merchant: str = "Blue Tokai Coffee") -> str:
    return f"Thanks for shopping with us.\nItem: {item}\nTotal: ₹{amount}\nMerchant: {merchant}\n"


class FakeMailbox:
    """In-memory stand-in for :class:`GmailClient`.

    *results* maps a search query to the IDs it returns; queries not in
    the map return nothing unless *default_ids* is set.
    """

    def __init__(
        self,
        messages: dict[str, RawMessage] | None = None,
        *,
        results: dict[str, list[str]] | None = None,
        default_ids: list[str] | None = None,
        failing: set[str] | None = None,
        address: str = "me@example.com",
    ) -> None:
        self.messages = messages or {}
        self.results = results or {}
        self.default_ids = default_ids
        self.failing = failing or set()
        self.address = address
        self.queries: list[str] = []
        self.fetched: list[str] = []

    async def search(self, account_id: str, query: str, *, max_results: int) -> list[str]:
        self.queries.append(query)
        if query in self.results:
            return list(self.results[query])
        if self.default_ids is not None:
            return list(self.default_ids)
        return []

    async def get_message(self, account_id: str, message_id: str) -> RawMessage:
        if message_id in self.failing:
            raise SourceUnavailable(f"Mailbox API returned 500 for {message_id}")
        self.fetched.append(message_id)
        return self.messages[message_id]

    async def get_profile(self, account_id: str) -> MailboxProfile:
        return MailboxProfile(address=self.address)
