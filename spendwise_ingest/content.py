"""Content extractor: fetch a message and reduce its MIME tree to plain text."""

from __future__ import annotations

import base64
import binascii
import re

import structlog
from bs4 import BeautifulSoup

from .gmail_client import GmailClient
from .models import MimePart, RawMessage

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")


def decode_body(data: str | None) -> str:
    """Decode a base64url body as UTF-8, replacing undecodable bytes."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        logger.warning("mime_body_undecodable", length=len(data))
        return ""
    return raw.decode("utf-8", errors="replace")


def html_to_text(html: str) -> str:
    """Strip tags and collapse whitespace."""
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    return _WHITESPACE.sub(" ", text).strip()


def _walk(part: MimePart):
    """Depth-first, document-order traversal of a part tree."""
    yield part
    for child in part.parts:
        yield from _walk(child)


def _is_inline(part: MimePart) -> bool:
    return not part.filename and part.body is not None


def to_plain_text(message: RawMessage) -> str:
    """Return the readable text of *message*.

    All ``text/plain`` parts anywhere in the tree are concatenated in
    document order.  Only when no plain part exists is the first
    ``text/html`` part used, converted with :func:`html_to_text`.
    Attachments are ignored.  An empty string is a valid result.
    """
    parts = [p for p in _walk(message.payload) if _is_inline(p)]

    plain = [decode_body(p.body) for p in parts if p.mime_type == "text/plain"]
    if plain:
        return "\n".join(plain)

    for part in parts:
        if part.mime_type == "text/html":
            return html_to_text(decode_body(part.body))
    return ""


class ContentExtractor:
    """Fetches messages through the mailbox client and extracts their text."""

    def __init__(self, mailbox: GmailClient) -> None:
        self._mailbox = mailbox

    async def fetch(self, account_id: str, message_id: str) -> RawMessage:
        """Fetch one message.  Raises ``SourceUnavailable`` on mailbox errors."""
        message = await self._mailbox.get_message(account_id, message_id)
        logger.debug(
            "message_fetched",
            message_id=message_id,
            sender=message.sender,
            subject=message.subject,
        )
        return message

    def to_plain_text(self, message: RawMessage) -> str:
        text = to_plain_text(message)
        logger.debug("message_text_extracted", message_id=message.message_id, length=len(text))
        return text
