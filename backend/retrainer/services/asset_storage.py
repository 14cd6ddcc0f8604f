"""
Consolidated asset storage.

Keeps one JSON document per subject holding model weights, training and
prediction history, and the feature cache. Documents are written with the
atomic temp/backup protocol, read through a short-lived in-memory cache,
and flushed periodically by a background thread.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from retrainer.core.clock import Clock, now_ms
from retrainer.core.config import settings
from retrainer.schemas.asset import (
    AssetRecord,
    FeatureSection,
    PredictionSection,
    TrainingSection,
    VariantModel,
)
from retrainer.schemas.storage import (
    AssetSummary,
    CleanupResult,
    MigrationSummary,
    StorageStats,
    StoredFileInfo,
)
from retrainer.services.atomic_io import (
    StorageError,
    StorageReadCorruption,
    StorageWriteFailure,
    backup_path_for,
    read_json,
    write_json_atomic,
)
from retrainer.services.legacy_migration import LegacyMigrator
from retrainer.services.model_runtime import ModelFactory, ModelHandle
from retrainer.services.weight_codec import WeightCodecError, decode_weights, encode_weights

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = "_complete.json"
MS_PER_HOUR = 60 * 60 * 1000


def entry_time(entry: dict[str, Any]) -> Optional[int]:
    """Epoch ms of a history entry, or None if it carries no timestamp."""
    value = entry.get("timestamp") or entry.get("original_timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    return None


def select_retained_training(
    history: list[dict[str, Any]],
    cutoff: int,
    keep_recent: int,
) -> list[dict[str, Any]]:
    """
    Apply the training-history retention rule.

    The ``keep_recent`` most recent entries always survive; older ones
    survive only while newer than ``cutoff``. Entries without a timestamp
    are kept. Original order is preserved.
    """
    by_age = sorted(range(len(history)), key=lambda i: entry_time(history[i]) or 0)
    recent = set(by_age[-keep_recent:]) if keep_recent > 0 else set()

    retained = []
    for i, entry in enumerate(history):
        timestamp = entry_time(entry)
        if i in recent or timestamp is None or timestamp >= cutoff:
            retained.append(entry)
    return retained


def feature_count(features: Any) -> int:
    if isinstance(features, dict) and isinstance(features.get("features"), list):
        return len(features["features"])
    if isinstance(features, (list, dict)):
        return len(features)
    return 0


class ConsolidatedStorage:
    """
    Persistence engine for per-subject asset documents.

    Every read-modify-write for a subject runs under that subject's lock;
    different subjects are independent.

    Attributes:
        base_dir: Storage root (also the root of the legacy layout).
        consolidated_dir: Directory holding ``<subject>_complete.json`` files.
        enable_cache: Whether reads are served from memory when fresh.
        cache_ttl_seconds: Cache entry lifetime.
        save_interval_ms: Period of the background force-save.
        max_age_hours: Default retention window for cleanup().
    """

    def __init__(
        self,
        base_dir: Path | str | None = None,
        enable_cache: bool | None = None,
        cache_ttl_seconds: float | None = None,
        save_interval_ms: int | None = None,
        max_age_hours: int | None = None,
        training_history_limit: int | None = None,
        prediction_history_limit: int | None = None,
        retained_training_sessions: int | None = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize the storage.

        Args default to the values in :mod:`retrainer.core.config`.
        The periodic save is not started here; call start_periodic_save().
        """
        self.base_dir = Path(base_dir) if base_dir is not None else settings.storage_dir
        self.consolidated_dir = self.base_dir / "consolidated"
        self.consolidated_dir.mkdir(parents=True, exist_ok=True)

        self.enable_cache = settings.enable_cache if enable_cache is None else enable_cache
        self.cache_ttl_seconds = (
            settings.cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self.save_interval_ms = save_interval_ms or settings.save_interval_ms
        self.max_age_hours = max_age_hours or settings.max_age_hours
        self.training_history_limit = training_history_limit or settings.training_history_limit
        self.prediction_history_limit = (
            prediction_history_limit or settings.prediction_history_limit
        )
        self.retained_training_sessions = (
            settings.retained_training_sessions
            if retained_training_sessions is None
            else retained_training_sessions
        )

        self._clock = clock
        self._monotonic: Callable[[], float] = time.monotonic
        self._cache: dict[str, tuple[AssetRecord, float]] = {}
        self._cache_lock = threading.Lock()
        self._subject_locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

        self._flush_stop = threading.Event()
        self._flush_thread: threading.Thread | None = None

        logger.info(
            f"ConsolidatedStorage: initialized at {self.consolidated_dir} "
            f"(cache={'on' if self.enable_cache else 'off'}, "
            f"save_interval={self.save_interval_ms}ms)"
        )

    # ------------------------------------------------------------------
    # Paths, locks and cache
    # ------------------------------------------------------------------

    def get_asset_file_path(self, subject: str) -> Path:
        return self.consolidated_dir / f"{subject.lower()}{DOCUMENT_SUFFIX}"

    def _lock_for(self, subject: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._subject_locks.get(subject)
            if lock is None:
                lock = threading.RLock()
                self._subject_locks[subject] = lock
            return lock

    def _cache_get(self, key: str) -> AssetRecord | None:
        if not self.enable_cache:
            return None
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is None:
                return None
            record, stored_at = cached
            if self._monotonic() - stored_at >= self.cache_ttl_seconds:
                return None
            return record

    def _cache_put(self, key: str, record: AssetRecord) -> None:
        if not self.enable_cache:
            return
        with self._cache_lock:
            self._cache[key] = (record, self._monotonic())

    @property
    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    # ------------------------------------------------------------------
    # Document read / write
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(payload: Any) -> AssetRecord:
        return AssetRecord.model_validate(payload)

    def _read_from_disk(self, key: str) -> AssetRecord:
        path = self.get_asset_file_path(key)
        backup_path = backup_path_for(path)

        try:
            return read_json(path, verify=self._validate)
        except FileNotFoundError:
            if not backup_path.exists():
                return AssetRecord.empty(key)
            logger.warning(f"ConsolidatedStorage: {path.name} missing, trying backup")
        except StorageReadCorruption as e:
            logger.error(f"ConsolidatedStorage: {e}")

        if backup_path.exists():
            try:
                record = read_json(backup_path, verify=self._validate)
                logger.info(f"ConsolidatedStorage: Recovered {key} from backup file")
                return record
            except (StorageReadCorruption, FileNotFoundError) as e:
                logger.error(f"ConsolidatedStorage: Backup recovery failed for {key} - {e}")

        logger.error(
            f"ConsolidatedStorage: DATA LOSS - no usable document for {key}, "
            f"continuing with an empty record"
        )
        return AssetRecord.empty(key)

    def load_asset_data(self, subject: str) -> AssetRecord:
        """
        Load the consolidated record of a subject.

        Never raises for unreadable documents: falls back to the backup
        and finally to a fresh empty record (logged as data loss).
        """
        key = subject.upper()
        with self._lock_for(key):
            cached = self._cache_get(key)
            if cached is not None:
                return cached

            record = self._read_from_disk(key)
            self._cache_put(key, record)
            return record

    def save_asset_data(self, subject: str, record: AssetRecord) -> None:
        """
        Atomically write a subject's record and update the cache.

        Raises:
            StorageWriteFailure: If the write failed; the previous document
                is left in place.
        """
        key = subject.upper()
        with self._lock_for(key):
            record.subject = key
            record.timestamp = self._clock()
            write_json_atomic(
                self.get_asset_file_path(key),
                record.model_dump_json(),
                verify=self._validate,
            )
            self._cache_put(key, record)

    def _update(self, subject: str, mutate: Callable[[AssetRecord], Any]) -> Any:
        """Load, mutate a private copy, and save under the subject lock."""
        key = subject.upper()
        with self._lock_for(key):
            record = self.load_asset_data(key).model_copy(deep=True)
            result = mutate(record)
            self.save_asset_data(key, record)
            return result

    # ------------------------------------------------------------------
    # Model weights
    # ------------------------------------------------------------------

    def save_model_weights(
        self,
        subject: str,
        variant: str,
        model: ModelHandle,
        config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Persist every parameter tensor of a trained model.

        Args:
            subject: Subject identifier.
            variant: Model variant.
            model: Trained model handle.
            config: Config the weights are valid for; defaults to
                ``model.config``. Must carry ``features``.

        Returns:
            The metadata stored next to the weights.

        Raises:
            WeightCodecError: If a tensor holds NaN or infinite values;
                the stored document is left unchanged.
        """
        variant_key = variant.lower()
        stored = encode_weights(model.get_weights())
        model_config = dict(config if config is not None else getattr(model, "config", None) or {})

        def apply(record: AssetRecord) -> dict[str, Any]:
            entry = record.models.get(variant_key) or VariantModel()
            entry.weights = stored
            entry.config = model_config
            entry.architecture = getattr(model, "architecture", None) or variant_key
            entry.status = "trained"
            entry.metadata.update(
                param_count=stored.total_params,
                tensor_count=stored.count,
                is_compiled=bool(getattr(model, "is_compiled", False)),
                feature_count=model_config.get("features"),
                saved_at=stored.saved_at,
            )
            record.models[variant_key] = entry
            record.metadata.total_models_saved += 1
            return dict(entry.metadata)

        metadata = self._update(subject, apply)
        logger.info(
            f"ConsolidatedStorage: Saved {stored.count} tensors "
            f"({stored.total_params} params) for {subject.upper()}:{variant_key}"
        )
        return metadata

    def has_trained_weights(self, subject: str, variant: str) -> bool:
        entry = self.load_asset_data(subject).models.get(variant.lower())
        return (
            entry is not None
            and entry.status != "placeholder"
            and entry.weights is not None
            and entry.weights.count > 0
        )

    def load_model_weights(
        self,
        subject: str,
        variant: str,
        factory: ModelFactory,
        config: dict[str, Any],
    ) -> ModelHandle | None:
        """
        Rebuild a trained model from stored weights.

        Returns None when no usable weights exist, including when the
        stored feature count differs from ``config["features"]``. Weights
        are never reshaped to fit.
        """
        key = subject.upper()
        variant_key = variant.lower()
        entry = self.load_asset_data(key).models.get(variant_key)
        if entry is None or entry.weights is None or entry.status == "placeholder":
            return None

        stored_features = entry.config.get("features")
        requested_features = config.get("features")
        if stored_features != requested_features:
            logger.warning(
                f"ConsolidatedStorage: Feature count mismatch for {key}:{variant_key} "
                f"(stored={stored_features}, requested={requested_features}); weights not loaded"
            )
            return None

        try:
            arrays = decode_weights(entry.weights)
        except WeightCodecError as e:
            logger.error(f"ConsolidatedStorage: Corrupt weights for {key}:{variant_key} - {e}")
            return None

        model = factory(config)
        model.build_model()
        model.compile_model()
        model.set_weights(arrays)
        logger.info(f"ConsolidatedStorage: Loaded {len(arrays)} tensors for {key}:{variant_key}")
        return model

    # ------------------------------------------------------------------
    # History and feature cache
    # ------------------------------------------------------------------

    def save_training_history(self, subject: str, entry: dict[str, Any]) -> None:
        """Append one training session, keeping the most recent N."""
        entry = dict(entry)
        entry.setdefault("timestamp", self._clock())

        def apply(record: AssetRecord) -> None:
            training = record.training
            training.history.append(entry)
            if len(training.history) > self.training_history_limit:
                training.history = training.history[-self.training_history_limit:]
            training.last_training = entry["timestamp"]
            training.total_sessions += 1
            duration_ms = entry.get("duration_ms")
            if isinstance(duration_ms, (int, float)) and duration_ms > 0:
                record.metadata.total_training_hours += duration_ms / MS_PER_HOUR

        self._update(subject, apply)

    def save_prediction_history(
        self,
        subject: str,
        predictions: dict[str, Any] | list[dict[str, Any]],
    ) -> int:
        """
        Append one prediction or a batch, keeping the most recent M.

        Returns:
            Number of predictions held after the append.
        """
        batch = predictions if isinstance(predictions, list) else [predictions]
        now = self._clock()
        batch = [{"timestamp": now, **p} for p in batch]

        def apply(record: AssetRecord) -> int:
            section = record.predictions
            section.history.extend(batch)
            if len(section.history) > self.prediction_history_limit:
                section.history = section.history[-self.prediction_history_limit:]
            section.last_prediction = now
            section.total_count += len(batch)
            record.metadata.total_predictions_made += len(batch)
            return len(section.history)

        return self._update(subject, apply)

    def save_feature_cache(self, subject: str, features: Any) -> None:
        now = self._clock()

        def apply(record: AssetRecord) -> None:
            record.features = FeatureSection(
                cache=features,
                last_extraction=now,
                count=feature_count(features),
            )

        self._update(subject, apply)

    def load_training_history(self, subject: str) -> TrainingSection:
        return self.load_asset_data(subject).training

    def load_prediction_history(self, subject: str) -> PredictionSection:
        return self.load_asset_data(subject).predictions

    def load_feature_cache(self, subject: str, max_age_ms: int = 300_000) -> Any:
        """Return cached features, or None when absent or older than ``max_age_ms``."""
        section = self.load_asset_data(subject).features
        if section.cache is None or section.last_extraction is None:
            return None
        if self._clock() - section.last_extraction >= max_age_ms:
            return None
        return section.cache

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_subjects(self) -> list[str]:
        return sorted(
            path.name[: -len(DOCUMENT_SUFFIX)].upper()
            for path in self.consolidated_dir.glob(f"*{DOCUMENT_SUFFIX}")
        )

    def get_asset_info(self, subject: str) -> dict[str, Any]:
        key = subject.upper()
        path = self.get_asset_file_path(key)
        record = self.load_asset_data(key)

        models = {}
        for variant, entry in record.models.items():
            models[variant] = {
                "status": entry.status,
                "has_weights": self.has_trained_weights(key, variant),
                "tensor_count": entry.weights.count if entry.weights else 0,
                "total_params": entry.weights.total_params if entry.weights else 0,
                "saved_at": entry.weights.saved_at if entry.weights else None,
                "features": entry.config.get("features"),
                "architecture": entry.architecture,
            }

        return {
            "subject": key,
            "file": path.name,
            "exists": path.exists(),
            "size_bytes": path.stat().st_size if path.exists() else 0,
            "version": record.version,
            "timestamp": record.timestamp,
            "models": models,
            "training": {
                "total_sessions": record.training.total_sessions,
                "last_training": record.training.last_training,
                "history_size": len(record.training.history),
            },
            "predictions": {
                "total_count": record.predictions.total_count,
                "last_prediction": record.predictions.last_prediction,
                "history_size": len(record.predictions.history),
            },
            "features": {
                "count": record.features.count,
                "last_extraction": record.features.last_extraction,
            },
            "metadata": record.metadata.model_dump(),
        }

    def list_assets(self) -> list[AssetSummary]:
        assets = []
        for path in sorted(self.consolidated_dir.glob(f"*{DOCUMENT_SUFFIX}")):
            subject = path.name[: -len(DOCUMENT_SUFFIX)].upper()
            stat = path.stat()
            summary = AssetSummary(
                subject=subject,
                file=path.name,
                size_bytes=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            )
            try:
                record = read_json(path, verify=self._validate)
                summary.models_count = len(record.models)
                summary.trained_variants = sorted(
                    v for v, m in record.models.items() if m.weights is not None
                )
                summary.training_sessions = record.training.total_sessions
                summary.total_predictions = record.predictions.total_count
                summary.has_feature_cache = record.features.cache is not None
            except StorageReadCorruption as e:
                summary.error = str(e)
            assets.append(summary)
        return assets

    def get_trained_models_list(self) -> list[dict[str, str]]:
        trained = []
        for subject in self.list_subjects():
            for variant in self.load_asset_data(subject).models:
                if self.has_trained_weights(subject, variant):
                    trained.append({"subject": subject, "variant": variant})
        return trained

    def get_storage_stats(self) -> StorageStats:
        files = []
        total = 0
        for path in sorted(self.consolidated_dir.glob(f"*{DOCUMENT_SUFFIX}")):
            stat = path.stat()
            total += stat.st_size
            files.append(
                StoredFileInfo(
                    name=path.name,
                    size_bytes=stat.st_size,
                    last_modified=datetime.fromtimestamp(
                        stat.st_mtime, tz=timezone.utc
                    ).isoformat(),
                )
            )

        return StorageStats(
            consolidated_dir=str(self.consolidated_dir),
            document_count=len(files),
            total_size_bytes=total,
            files=files,
            cache_size=self.cache_size,
            enable_cache=self.enable_cache,
            periodic_save_running=self.is_periodic_save_running,
            legacy_data_present=self.has_legacy_data(),
            timestamp=self._clock(),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self, max_age_hours: int | None = None) -> CleanupResult:
        """
        Apply retention to every stored document.

        Prediction entries older than the cutoff are dropped. Training
        history keeps the most recent ``retained_training_sessions`` entries
        regardless of age plus anything newer than the cutoff. Only changed
        documents are rewritten.
        """
        hours = max_age_hours or self.max_age_hours
        cutoff = self._clock() - hours * MS_PER_HOUR
        result = CleanupResult(max_age_hours=hours, cutoff=cutoff)

        for subject in self.list_subjects():
            result.documents_scanned += 1
            try:
                with self._lock_for(subject):
                    record = self.load_asset_data(subject).model_copy(deep=True)

                    predictions = [
                        p for p in record.predictions.history
                        if entry_time(p) is None or entry_time(p) >= cutoff
                    ]
                    training = select_retained_training(
                        record.training.history, cutoff, self.retained_training_sessions
                    )

                    removed_predictions = len(record.predictions.history) - len(predictions)
                    removed_training = len(record.training.history) - len(training)
                    if removed_predictions == 0 and removed_training == 0:
                        continue

                    record.predictions.history = predictions
                    record.training.history = training
                    self.save_asset_data(subject, record)

                result.documents_rewritten += 1
                result.predictions_removed += removed_predictions
                result.training_removed += removed_training
            except StorageError as e:
                logger.error(f"ConsolidatedStorage: Cleanup failed for {subject} - {e}")
                result.errors.append(f"{subject}: {e}")

        result.cache_entries_evicted = self._evict_expired_cache()
        logger.info(
            f"ConsolidatedStorage: Cleanup completed - rewrote {result.documents_rewritten}/"
            f"{result.documents_scanned} documents, removed {result.predictions_removed} "
            f"predictions and {result.training_removed} training entries"
        )
        return result

    def _evict_expired_cache(self) -> int:
        with self._cache_lock:
            now = self._monotonic()
            expired = [
                key for key, (_, stored_at) in self._cache.items()
                if now - stored_at >= self.cache_ttl_seconds
            ]
            for key in expired:
                del self._cache[key]
            return len(expired)

    def force_save(self) -> int:
        """
        Rewrite every cached record.

        Returns:
            Number of documents written.

        Raises:
            StorageWriteFailure: If any document failed; the others are
                still attempted.
        """
        with self._cache_lock:
            keys = list(self._cache)

        saved = 0
        failures = []
        for key in keys:
            with self._lock_for(key):
                with self._cache_lock:
                    cached = self._cache.get(key)
                if cached is None:
                    continue
                try:
                    self.save_asset_data(key, cached[0])
                    saved += 1
                except StorageWriteFailure as e:
                    failures.append(f"{key}: {e}")

        if failures:
            raise StorageWriteFailure(f"Force save failed for {len(failures)} documents: {failures}")

        logger.info(f"ConsolidatedStorage: Force save completed, saved {saved} documents")
        return saved

    @property
    def is_periodic_save_running(self) -> bool:
        return self._flush_thread is not None and self._flush_thread.is_alive()

    def start_periodic_save(self) -> None:
        """Start the background force-save thread."""
        if self.is_periodic_save_running:
            return

        self._flush_stop.clear()
        self._flush_thread = threading.Thread(
            target=self._periodic_save_loop,
            name="storage-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info(f"ConsolidatedStorage: Periodic save started (every {self.save_interval_ms}ms)")

    def _periodic_save_loop(self) -> None:
        while not self._flush_stop.wait(self.save_interval_ms / 1000):
            try:
                self.force_save()
            except StorageError as e:
                logger.error(f"ConsolidatedStorage: Periodic save failed - {e}")

    def stop_periodic_save(self) -> None:
        self._flush_stop.set()
        if self._flush_thread:
            self._flush_thread.join(timeout=5)
            self._flush_thread = None
            logger.info("ConsolidatedStorage: Periodic save stopped")

    def shutdown(self) -> None:
        """Stop the flush thread, write everything cached, and drop the cache."""
        logger.info("ConsolidatedStorage: Shutting down...")
        self.stop_periodic_save()
        try:
            self.force_save()
        except StorageError as e:
            logger.error(f"ConsolidatedStorage: Final save failed during shutdown - {e}")
        with self._cache_lock:
            self._cache.clear()
        logger.info("ConsolidatedStorage: Shutdown completed")

    # ------------------------------------------------------------------
    # Legacy layout
    # ------------------------------------------------------------------

    def has_legacy_data(self) -> bool:
        return LegacyMigrator(self).has_legacy_data()

    def migrate_legacy_data(self) -> MigrationSummary:
        """Convert the legacy per-category layout into consolidated documents."""
        return LegacyMigrator(self).migrate()
