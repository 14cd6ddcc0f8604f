"""
Consolidated asset document schemas.

One AssetRecord holds everything persisted for a subject: model weights
per variant, training and prediction history, and the feature cache.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from retrainer.core.clock import now_ms

SCHEMA_VERSION = "2.0"


class WeightBlob(BaseModel):
    """One flattened parameter tensor."""

    data: list[float | int] = Field(..., description="Flat tensor values")
    shape: list[int] = Field(..., description="Original tensor shape")
    dtype: str = Field("float32", description="Numpy dtype name")
    index: int = Field(..., ge=0, description="Position in the parameter list")


class StoredWeights(BaseModel):
    """Full parameter set of one trained variant."""

    data: list[WeightBlob] = Field(default_factory=list, description="Ordered tensors")
    count: int = Field(0, ge=0, description="Number of tensors")
    total_params: int = Field(0, ge=0, description="Total scalar parameters")
    shape: list[list[int]] = Field(default_factory=list, description="Per-tensor shapes")
    dtype: str = Field("float32", description="Dtype of the first tensor")
    saved_at: int = Field(default_factory=now_ms, description="Epoch ms")


class VariantModel(BaseModel):
    """Persisted state of one model variant for a subject."""

    model_config = ConfigDict(extra="allow")

    weights: Optional[StoredWeights] = None
    config: dict[str, Any] = Field(default_factory=dict)
    architecture: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: str = Field("empty", description="empty, trained or placeholder")
    legacy_weights: Optional[dict[str, Any]] = None


class TrainingSection(BaseModel):
    history: list[dict[str, Any]] = Field(default_factory=list)
    last_training: Optional[int] = None
    total_sessions: int = 0


class PredictionSection(BaseModel):
    history: list[dict[str, Any]] = Field(default_factory=list)
    last_prediction: Optional[int] = None
    total_count: int = 0


class FeatureSection(BaseModel):
    cache: Any = None
    last_extraction: Optional[int] = None
    count: int = 0


class AssetMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    created_at: int = Field(default_factory=now_ms)
    total_models_saved: int = 0
    total_predictions_made: int = 0
    total_training_hours: float = 0.0
    migrated_components: list[str] = Field(default_factory=list)
    legacy_model_info: Optional[dict[str, Any]] = None


class AssetRecord(BaseModel):
    """
    Consolidated document for one subject.

    Attributes:
        subject: Upper-cased subject identifier.
        version: Schema version; documents of another major version
            are rejected on load.
        timestamp: Epoch ms of the last write.
        models: Per-variant model state.
        training: Rolling training history.
        predictions: Rolling prediction history.
        features: Most recent feature extraction.
        metadata: Lifetime counters.
    """

    subject: str
    version: str = SCHEMA_VERSION
    timestamp: int
    models: dict[str, VariantModel] = Field(default_factory=dict)
    training: TrainingSection = Field(default_factory=TrainingSection)
    predictions: PredictionSection = Field(default_factory=PredictionSection)
    features: FeatureSection = Field(default_factory=FeatureSection)
    metadata: AssetMetadata = Field(default_factory=AssetMetadata)

    @field_validator("version")
    @classmethod
    def check_version(cls, value: str) -> str:
        if value.split(".")[0] != SCHEMA_VERSION.split(".")[0]:
            raise ValueError(f"Unsupported asset document version {value}")
        return value

    @classmethod
    def empty(cls, subject: str) -> "AssetRecord":
        """Create a fresh record for a subject never seen before."""
        now = now_ms()
        return cls(
            subject=subject.upper(),
            timestamp=now,
            metadata=AssetMetadata(created_at=now),
        )
