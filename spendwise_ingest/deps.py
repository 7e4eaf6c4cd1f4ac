"""FastAPI dependency-injection helpers."""

from __future__ import annotations

from fastapi import Request

from spendwise_ingest.config import IngestSettings
from spendwise_ingest.service import IngestionService


def get_service(request: Request) -> IngestionService:
    return request.app.state.service


def get_settings(request: Request) -> IngestSettings:
    return request.app.state.settings
