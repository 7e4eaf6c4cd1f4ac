"""Async client for the Gmail REST API, authorised per account."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from .config import GmailConfig
from .credentials import CredentialProvider
from .errors import SourceUnavailable
from .models import MailboxProfile, MimePart, RawMessage

logger = structlog.get_logger()


def _to_part(node: dict[str, Any]) -> MimePart:
    """Convert a Gmail ``payload`` node into a :class:`MimePart` tree."""
    body = node.get("body") or {}
    return MimePart(
        mime_type=(node.get("mimeType") or "").lower(),
        body=body.get("data"),
        filename=node.get("filename") or "",
        parts=[_to_part(child) for child in node.get("parts") or []],
    )


def _to_message(message_id: str, data: dict[str, Any]) -> RawMessage:
    payload = data.get("payload") or {}
    headers = {
        h["name"].lower(): h.get("value", "")
        for h in payload.get("headers") or []
        if h.get("name")
    }
    return RawMessage(
        message_id=data.get("id") or message_id,
        headers=headers,
        payload=_to_part(payload),
    )


class GmailClient:
    """Mailbox API used by the locator and the content extractor.

    Every call obtains its bearer token from the :class:`CredentialProvider`
    (which may refresh it), so :class:`~spendwise_ingest.errors.NoCredential`
    and :class:`~spendwise_ingest.errors.Revoked` propagate unchanged.
    Transport failures and non-2xx responses become
    :class:`~spendwise_ingest.errors.SourceUnavailable`.  Nothing is retried
    here; retry policy belongs to the caller.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialProvider,
        config: GmailConfig,
    ) -> None:
        self._http = http
        self._credentials = credentials
        self._config = config

    async def search(self, account_id: str, query: str, *, max_results: int) -> list[str]:
        """Return the first page of message IDs matching *query*."""
        data = await self._get(
            account_id,
            "/users/me/messages",
            params={"q": query, "maxResults": max_results},
        )
        return [m["id"] for m in data.get("messages") or [] if m.get("id")]

    async def get_message(self, account_id: str, message_id: str) -> RawMessage:
        data = await self._get(
            account_id,
            f"/users/me/messages/{message_id}",
            params={"format": "full"},
        )
        return _to_message(message_id, data)

    async def get_profile(self, account_id: str) -> MailboxProfile:
        data = await self._get(account_id, "/users/me/profile")
        return MailboxProfile(address=data.get("emailAddress", ""))

    async def _get(
        self,
        account_id: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        credential = await self._credentials.get(account_id)
        url = f"{self._config.api_base_url.rstrip('/')}{path}"
        try:
            response = await self._http.get(
                url,
                params=params,
                headers={
                    "Authorization": (
                        f"{credential.token_type} {credential.access_token.get_secret_value()}"
                    ),
                },
                timeout=self._config.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "mailbox_api_error",
                account_id=account_id,
                path=path,
                status_code=exc.response.status_code,
            )
            raise SourceUnavailable(
                f"Mailbox API returned {exc.response.status_code} for {path}"
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("mailbox_api_unreachable", account_id=account_id, path=path, error=str(exc))
            raise SourceUnavailable(f"Mailbox API unreachable: {exc}") from exc
        except ValueError as exc:
            raise SourceUnavailable(f"Mailbox API returned a malformed body for {path}") from exc
