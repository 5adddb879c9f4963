"""
Composed FastAPI Dependencies

Resolves the authenticated owner plus the process-wide services held on
app.state (record store, notifier, ingestion service). Route handlers
import from here and never reach into app.state directly.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request

from fileflow.auth.token import get_current_owner, resolve_owner_optional
from fileflow.realtime.notifier import ChangeNotifier
from fileflow.services.ingestion import IngestionService
from fileflow.store.base import RecordStore


def get_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.notifier


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentOwner  = Annotated[UUID, Depends(get_current_owner)]
OptionalOwner = Annotated[UUID | None, Depends(resolve_owner_optional)]
Store         = Annotated[RecordStore, Depends(get_store)]
Notifier      = Annotated[ChangeNotifier, Depends(get_notifier)]
Ingestion     = Annotated[IngestionService, Depends(get_ingestion)]
