"""Per-account import, status, ledger and credential endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from spendwise_ingest.config import IngestSettings
from spendwise_ingest.deps import get_service, get_settings
from spendwise_ingest.errors import AlreadyRunning, IngestError, NoCredential, Revoked, SourceUnavailable
from spendwise_ingest.models import Credential, ImportStatus, ImportSummary, ProcessingRecord
from spendwise_ingest.schemas import CredentialIn, LedgerResetOut, MailboxOut, PaginatedResponse
from spendwise_ingest.service import IngestionService

router = APIRouter(prefix="/api/v1/accounts", tags=["imports"])


def _http_error(exc: IngestError) -> HTTPException:
    if isinstance(exc, AlreadyRunning):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": "Import already running or cooling down",
                "cooldown_remaining_seconds": exc.cooldown_remaining_seconds,
            },
            headers={"Retry-After": str(exc.cooldown_remaining_seconds)},
        )
    if isinstance(exc, NoCredential):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mailbox not connected")
    if isinstance(exc, Revoked):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Mailbox access was revoked; reconnect the mailbox",
        )
    if isinstance(exc, SourceUnavailable):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Mailbox unavailable")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("/{account_id}/imports", response_model=ImportSummary)
async def start_import(
    account_id: str,
    service: Annotated[IngestionService, Depends(get_service)],
):
    try:
        return await service.orchestrator.start_import(account_id)
    except IngestError as exc:
        raise _http_error(exc) from exc


@router.get("/{account_id}/imports/status", response_model=ImportStatus)
async def import_status(
    account_id: str,
    service: Annotated[IngestionService, Depends(get_service)],
):
    return await service.orchestrator.status(account_id)


@router.get(
    "/{account_id}/processed-messages",
    response_model=PaginatedResponse[ProcessingRecord],
)
async def list_processed_messages(
    account_id: str,
    service: Annotated[IngestionService, Depends(get_service)],
    offset: int = 0,
    limit: int = 50,
):
    records = await service.ledger.list_records(account_id, offset=offset, limit=limit)
    return PaginatedResponse(items=records, offset=offset, limit=limit)


@router.delete("/{account_id}/processed-messages", response_model=LedgerResetOut)
async def clear_processed_messages(
    account_id: str,
    service: Annotated[IngestionService, Depends(get_service)],
    settings: Annotated[IngestSettings, Depends(get_settings)],
):
    if not settings.allow_ledger_reset:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Ledger reset is disabled")
    deleted = await service.ledger.clear(account_id)
    return LedgerResetOut(account_id=account_id, deleted=deleted)


@router.put("/{account_id}/credential", status_code=status.HTTP_204_NO_CONTENT)
async def store_credential(
    account_id: str,
    body: CredentialIn,
    service: Annotated[IngestionService, Depends(get_service)],
):
    if body.expiry is not None:
        expiry = body.expiry if body.expiry.tzinfo else body.expiry.replace(tzinfo=UTC)
    elif body.expires_in is not None:
        expiry = datetime.now(UTC) + timedelta(seconds=body.expires_in)
    else:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="One of expiry or expires_in is required",
        )
    await service.credentials.store(
        Credential(
            account_id=account_id,
            access_token=body.access_token,
            refresh_token=body.refresh_token,
            scope=body.scope,
            token_type=body.token_type,
            expiry=expiry,
        )
    )


@router.get("/{account_id}/mailbox", response_model=MailboxOut)
async def mailbox_profile(
    account_id: str,
    service: Annotated[IngestionService, Depends(get_service)],
):
    try:
        profile = await service.mailbox.get_profile(account_id)
    except IngestError as exc:
        raise _http_error(exc) from exc
    return MailboxOut(account_id=account_id, address=profile.address)
