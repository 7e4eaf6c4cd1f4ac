"""Credential provider: the only reader and writer of stored OAuth credentials."""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import GmailConfig, RetryConfig
from .db.models import OAuthCredential
from .errors import NoCredential, Revoked, SourceUnavailable
from .models import Credential
from .retry import with_retry

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_model(row: OAuthCredential) -> Credential:
    return Credential(
        account_id=row.account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        scope=row.scope,
        token_type=row.token_type,
        expiry=row.expiry,
    )


def _oauth_error(response: httpx.Response) -> str:
    """Pull the ``error`` code out of an OAuth error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return f"http_{response.status_code}"
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return f"http_{response.status_code}"


class CredentialProvider:
    """Supplies a valid access credential per account, refreshing on expiry.

    Refreshes for the same account are serialised in-process so that two
    callers racing on an expired token trigger a single token request; the
    refreshed token replaces the stored one in a single UPDATE.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient,
        config: GmailConfig,
        retry_config: RetryConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session_factory
        self._http = http
        self._config = config
        self._retry_config = retry_config
        self._clock = clock
        # Entries live only while some caller holds or awaits the lock
        self._refresh_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def get(self, account_id: str) -> Credential:
        """Return a non-expired credential for *account_id*.

        Raises :class:`NoCredential` if the account never connected and
        :class:`Revoked` if the token endpoint refuses the refresh token.
        """
        credential = await self._load(account_id)
        if not credential.is_expired(self._clock(), self._config.refresh_skew_seconds):
            return credential

        lock = self._refresh_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[account_id] = lock
        async with lock:
            # Another caller may have refreshed while we waited
            credential = await self._load(account_id)
            if not credential.is_expired(self._clock(), self._config.refresh_skew_seconds):
                return credential
            return await self._refresh(credential)

    async def store(self, credential: Credential) -> None:
        """Save a freshly granted credential, replacing any previous one."""
        async with self._session() as session:
            await session.merge(
                OAuthCredential(
                    account_id=credential.account_id,
                    access_token=credential.access_token.get_secret_value(),
                    refresh_token=credential.refresh_token.get_secret_value(),
                    scope=credential.scope,
                    token_type=credential.token_type,
                    expiry=credential.expiry,
                    updated_at=self._clock(),
                )
            )
            await session.commit()
        logger.info("credential_stored", account_id=credential.account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, account_id: str) -> Credential:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(OAuthCredential).where(OAuthCredential.account_id == account_id)
                )
            ).scalar_one_or_none()
        if row is None:
            raise NoCredential(account_id)
        return _to_model(row)

    async def _refresh(self, credential: Credential) -> Credential:
        account_id = credential.account_id
        try:
            token = await self._request_token(credential.refresh_token.get_secret_value())
            lifetime = int(token.get("expires_in", 3600))
        except httpx.HTTPStatusError as exc:
            reason = _oauth_error(exc.response)
            logger.warning(
                "credential_refresh_rejected",
                account_id=account_id,
                status_code=exc.response.status_code,
                reason=reason,
            )
            raise Revoked(account_id, reason) from exc
        except httpx.TransportError as exc:
            logger.warning("credential_refresh_unreachable", account_id=account_id, error=str(exc))
            raise SourceUnavailable(f"Token endpoint unreachable: {exc}") from exc
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("credential_refresh_malformed", account_id=account_id, error=str(exc))
            raise SourceUnavailable("Token endpoint returned a malformed body") from exc

        access_token = token.get("access_token")
        if not access_token:
            raise Revoked(account_id, "missing_access_token")

        now = self._clock()
        expiry = now + timedelta(seconds=lifetime)
        # Providers only sometimes rotate the refresh token
        refresh_token = token.get("refresh_token") or credential.refresh_token.get_secret_value()
        scope = token.get("scope", credential.scope)
        token_type = token.get("token_type", credential.token_type)

        async with self._session() as session:
            await session.execute(
                update(OAuthCredential)
                .where(OAuthCredential.account_id == account_id)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    scope=scope,
                    token_type=token_type,
                    expiry=expiry,
                    updated_at=now,
                )
            )
            await session.commit()

        logger.info("credential_refreshed", account_id=account_id, expiry=expiry.isoformat())
        return Credential(
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            scope=scope,
            token_type=token_type,
            expiry=expiry,
        )

    async def _request_token(self, refresh_token: str) -> dict:
        @with_retry(
            self._retry_config,
            operation="token_refresh",
            retryable_exceptions=(httpx.TransportError,),
        )
        async def _post() -> dict:
            response = await self._http.post(
                self._config.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret.get_secret_value(),
                },
                timeout=self._config.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()

        return await _post()
