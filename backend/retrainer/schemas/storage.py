"""
Storage Pydantic schemas for maintenance operations.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class CleanupRequest(BaseModel):
    max_age_hours: Optional[int] = Field(None, ge=1, description="Retention window")


class CleanupResult(BaseModel):
    """Outcome of a retention pass over all asset documents."""

    max_age_hours: int
    cutoff: int = Field(..., description="Epoch ms; older entries are candidates")
    documents_scanned: int = 0
    documents_rewritten: int = 0
    predictions_removed: int = 0
    training_removed: int = 0
    cache_entries_evicted: int = 0
    errors: list[str] = Field(default_factory=list)


class MigrationErrorInfo(BaseModel):
    subject: str
    component: str
    error: str


class MigrationSummary(BaseModel):
    """Structured report of a legacy-layout migration."""

    migrated_assets: int = 0
    migrated_models: int = 0
    migrated_weights: int = 0
    migrated_training: int = 0
    migrated_predictions: int = 0
    migrated_features: int = 0
    errors: list[MigrationErrorInfo] = Field(default_factory=list)
    details: list[dict[str, Any]] = Field(default_factory=list)


class StoredFileInfo(BaseModel):
    name: str
    size_bytes: int
    last_modified: str


class StorageStats(BaseModel):
    consolidated_dir: str
    document_count: int
    total_size_bytes: int
    files: list[StoredFileInfo]
    cache_size: int
    enable_cache: bool
    periodic_save_running: bool
    legacy_data_present: bool
    timestamp: int


class AssetSummary(BaseModel):
    subject: str
    file: str
    size_bytes: int
    last_modified: str
    models_count: int = 0
    trained_variants: list[str] = Field(default_factory=list)
    training_sessions: int = 0
    total_predictions: int = 0
    has_feature_cache: bool = False
    error: Optional[str] = None
