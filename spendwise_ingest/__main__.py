"""Entry point for the ingestion package.

Usage::

    python -m spendwise_ingest serve               # HTTP API under uvicorn
    python -m spendwise_ingest run <account_id>    # one import, summary as JSON
    python -m spendwise_ingest reset <account_id>  # clear an account's ledger (testing only)
"""

from __future__ import annotations

import asyncio
import sys

import structlog

from .config import IngestSettings
from .errors import AlreadyRunning, IngestError
from .logging import setup_logging

logger = structlog.get_logger()

USAGE = "Usage: python -m spendwise_ingest <serve | run <account_id> | reset <account_id>>"


async def _run_once(settings: IngestSettings, account_id: str) -> int:
    from .service import IngestionService

    service = IngestionService(settings)
    await service.start()
    try:
        summary = await service.orchestrator.start_import(account_id)
    except AlreadyRunning as exc:
        print(
            f"Import already running or cooling down, retry in {exc.cooldown_remaining_seconds}s",
            file=sys.stderr,
        )
        return 2
    except IngestError as exc:
        logger.error("import_failed", account_id=account_id, error=str(exc))
        return 1
    finally:
        await service.close()

    print(summary.model_dump_json(indent=2))
    return 0


async def _reset(settings: IngestSettings, account_id: str) -> int:
    from .service import IngestionService

    if not settings.allow_ledger_reset:
        print("Ledger reset is disabled (set SPENDWISE_ALLOW_LEDGER_RESET=true)", file=sys.stderr)
        return 1

    service = IngestionService(settings)
    await service.start()
    try:
        deleted = await service.ledger.clear(account_id)
    finally:
        await service.close()
    print(f"Deleted {deleted} processed-message records for {account_id}")
    return 0


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "run", "reset"):
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]
    settings = IngestSettings()
    setup_logging(json=settings.log_json, level=settings.log_level)

    if mode == "serve":
        import uvicorn

        from .app import create_app

        uvicorn.run(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
        return

    if len(sys.argv) < 3:
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    account_id = sys.argv[2]
    if mode == "run":
        sys.exit(asyncio.run(_run_once(settings, account_id)))
    sys.exit(asyncio.run(_reset(settings, account_id)))


if __name__ == "__main__":
    main()
