"""Request/response schemas for the HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class CredentialIn(BaseModel):
    """Tokens produced by the authorization-code exchange."""

    access_token: str
    refresh_token: str
    scope: str = ""
    token_type: str = "Bearer"
    expiry: datetime | None = Field(
        default=None,
        description="Absolute expiry (UTC); takes precedence over expires_in",
    )
    expires_in: int | None = Field(default=None, description="Seconds until the access token expires")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    offset: int
    limit: int


class LedgerResetOut(BaseModel):
    account_id: str
    deleted: int


class MailboxOut(BaseModel):
    account_id: str
    address: str
