"""
Pydantic schemas for persisted documents and API request/response validation.
"""

from retrainer.schemas.asset import (
    AssetMetadata,
    AssetRecord,
    FeatureSection,
    PredictionSection,
    StoredWeights,
    TrainingSection,
    VariantModel,
    WeightBlob,
)
from retrainer.schemas.storage import (
    AssetSummary,
    CleanupRequest,
    CleanupResult,
    MigrationErrorInfo,
    MigrationSummary,
    StorageStats,
)
from retrainer.schemas.training_job import (
    AdmissionDecision,
    CancelRequest,
    ClearCooldownsRequest,
    ClearCooldownsResponse,
    EmergencyStopResult,
    PeriodicCycleResult,
    QueueStatus,
    TrainRequest,
    TrainResponse,
    TrainSubmission,
)

__all__ = [
    "AssetMetadata",
    "AssetRecord",
    "FeatureSection",
    "PredictionSection",
    "StoredWeights",
    "TrainingSection",
    "VariantModel",
    "WeightBlob",
    "AssetSummary",
    "CleanupRequest",
    "CleanupResult",
    "MigrationErrorInfo",
    "MigrationSummary",
    "StorageStats",
    "AdmissionDecision",
    "CancelRequest",
    "ClearCooldownsRequest",
    "ClearCooldownsResponse",
    "EmergencyStopResult",
    "PeriodicCycleResult",
    "QueueStatus",
    "TrainRequest",
    "TrainResponse",
    "TrainSubmission",
]
