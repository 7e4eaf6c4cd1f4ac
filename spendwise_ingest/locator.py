"""Message locator: finds candidate expense messages in a mailbox."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from .config import GmailConfig
from .gmail_client import GmailClient
from .models import MailboxProfile

logger = structlog.get_logger()

# Progressively broader; the first expression with any hit wins.
SEARCH_EXPRESSIONS: tuple[str, ...] = (
    "subject:expense OR subject:receipt",
    "expense OR receipt OR payment",
    "transaction OR bill OR invoice",
)

RECENT_EXPRESSION = "after:{after} (expense OR receipt OR payment)"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_search_expressions(now: datetime, lookback_days: int) -> list[str]:
    """Return the ordered search expressions, recency-bounded query last."""
    after = int((now - timedelta(days=lookback_days)).timestamp())
    return [*SEARCH_EXPRESSIONS, RECENT_EXPRESSION.format(after=after)]


class MessageLocator:
    """Runs the ordered search expressions and returns one snapshot of IDs.

    Broader expressions are a fallback, not an accumulation.  Mailbox
    errors propagate as ``SourceUnavailable`` without retry.
    """

    def __init__(
        self,
        mailbox: GmailClient,
        config: GmailConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._mailbox = mailbox
        self._config = config
        self._clock = clock

    async def mailbox_profile(self, account_id: str) -> MailboxProfile:
        return await self._mailbox.get_profile(account_id)

    async def find_candidates(self, account_id: str) -> list[str]:
        expressions = build_search_expressions(self._clock(), self._config.lookback_days)
        found: list[str] = []

        for query in expressions:
            ids = await self._mailbox.search(
                account_id,
                query,
                max_results=self._config.max_results,
            )
            logger.debug("mailbox_search", query=query, matches=len(ids))
            if ids:
                found = ids
                break

        unique = list(dict.fromkeys(found))
        logger.info("candidates_located", count=len(unique))
        return unique
