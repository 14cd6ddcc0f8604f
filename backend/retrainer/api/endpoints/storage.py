"""
Storage API endpoints.

Exposes statistics, per-subject asset documents and maintenance
operations of the consolidated storage.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from retrainer.schemas.storage import (
    AssetSummary,
    CleanupRequest,
    CleanupResult,
    MigrationSummary,
    StorageStats,
)
from retrainer.services.asset_storage import ConsolidatedStorage
from retrainer.services.atomic_io import StorageWriteFailure

router = APIRouter()


def get_storage(request: Request) -> ConsolidatedStorage:
    """Dependency to get the ConsolidatedStorage created at startup."""
    return request.app.state.storage


@router.get("/stats", response_model=StorageStats)
async def get_storage_stats(
    storage: ConsolidatedStorage = Depends(get_storage),
) -> StorageStats:
    """Get document count, sizes and cache state."""
    return storage.get_storage_stats()


@router.get("/assets", response_model=list[AssetSummary])
async def list_assets(
    storage: ConsolidatedStorage = Depends(get_storage),
) -> list[AssetSummary]:
    """List every stored subject document."""
    return storage.list_assets()


@router.get("/assets/{subject}")
async def get_asset(
    subject: str,
    storage: ConsolidatedStorage = Depends(get_storage),
) -> dict[str, Any]:
    """Get a summary of one subject's document."""
    info = storage.get_asset_info(subject)
    if not info["exists"]:
        raise HTTPException(status_code=404, detail=f"No stored assets for {subject.upper()}")
    return info


@router.post("/cleanup", response_model=CleanupResult)
async def cleanup_storage(
    request: Optional[CleanupRequest] = Body(None),
    storage: ConsolidatedStorage = Depends(get_storage),
) -> CleanupResult:
    """Apply the retention rules to every stored document."""
    return storage.cleanup((request or CleanupRequest()).max_age_hours)


@router.post("/save")
async def force_save(
    storage: ConsolidatedStorage = Depends(get_storage),
) -> dict:
    """Write every cached document to disk now."""
    try:
        saved = storage.force_save()
    except StorageWriteFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "Force save completed", "saved": saved}


@router.post("/migrate", response_model=MigrationSummary)
async def migrate_legacy_data(
    storage: ConsolidatedStorage = Depends(get_storage),
) -> MigrationSummary:
    """Convert the legacy per-category layout into consolidated documents."""
    return storage.migrate_legacy_data()
