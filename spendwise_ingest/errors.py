"""Error taxonomy for the ingestion pipeline.

Account-level errors (:class:`NoCredential`, :class:`Revoked`,
:class:`SourceUnavailable` raised by the locator) abort an import run.
:class:`AlreadyRunning` is the "try later" signal of the single-flight
guard and :class:`AlreadyRecorded` is a benign ledger race that never
leaves the orchestrator.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base class for all ingestion pipeline errors."""


class NoCredential(IngestError):
    """The account never connected a mailbox."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"No mailbox credential for account {account_id}")
        self.account_id = account_id


class Revoked(IngestError):
    """The stored credential can no longer be refreshed; the user must reconnect."""

    def __init__(self, account_id: str, reason: str = "invalid_grant") -> None:
        super().__init__(f"Mailbox credential for account {account_id} was revoked: {reason}")
        self.account_id = account_id
        self.reason = reason


class SourceUnavailable(IngestError):
    """Transport or API failure talking to the mailbox."""


class AlreadyRunning(IngestError):
    """An import is active for the account, or its cooldown has not elapsed."""

    def __init__(self, account_id: str, cooldown_remaining_seconds: int) -> None:
        super().__init__(
            f"Import for account {account_id} is running or cooling down "
            f"({cooldown_remaining_seconds}s remaining)"
        )
        self.account_id = account_id
        self.cooldown_remaining_seconds = cooldown_remaining_seconds


class AlreadyRecorded(IngestError):
    """A ledger record already exists for this (account, message) pair."""

    def __init__(self, account_id: str, message_id: str) -> None:
        super().__init__(f"Message {message_id} already recorded for account {account_id}")
        self.account_id = account_id
        self.message_id = message_id
