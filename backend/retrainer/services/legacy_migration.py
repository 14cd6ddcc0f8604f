"""
Legacy storage migration.

Converts the old layout (one directory per category, one file per subject
per category) into consolidated per-subject documents:

    <base>/models/<subject>_model.json
    <base>/training/<subject>_training.json
    <base>/predictions/<subject>_predictions.json
    <base>/features/<subject>_features.json
    <base>/weights/<subject>_<variant>/...

Every category is migrated independently so one unreadable file never
blocks the rest. Weight files are not converted; a placeholder records
where they live until the model runtime rebuilds them.
"""

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from retrainer.schemas.asset import AssetRecord, FeatureSection, VariantModel
from retrainer.schemas.storage import MigrationErrorInfo, MigrationSummary
from retrainer.services.atomic_io import StorageError

if TYPE_CHECKING:
    from retrainer.services.asset_storage import ConsolidatedStorage

logger = logging.getLogger(__name__)

LEGACY_CATEGORIES = {
    "models": "model",
    "training": "training",
    "predictions": "predictions",
    "features": "features",
}
WEIGHTS_DIR = "weights"
WEIGHTS_DIR_PATTERN = re.compile(r"^(?P<subject>[A-Za-z0-9]+)_(?P<variant>[A-Za-z0-9]+)$")


class MigrationError(Exception):
    """Base exception for migration errors."""
    pass


class MigrationComponentFailure(MigrationError):
    """Raised when one legacy category of one subject cannot be migrated."""

    def __init__(self, subject: str, component: str, cause: Exception):
        super().__init__(f"{subject}/{component}: {cause}")
        self.subject = subject
        self.component = component
        self.cause = cause


def _read_legacy_document(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError(f"{path.name} is not a JSON object")
    return document


def _file_mtime_ms(path: Path) -> int:
    return int(path.stat().st_mtime * 1000)


class LegacyMigrator:
    """
    One-shot, re-runnable converter from the legacy layout.

    Components already migrated for a subject are listed in
    ``metadata.migrated_components`` and skipped on later runs.

    Attributes:
        storage: Target consolidated storage.
        base_dir: Root of the legacy layout.
    """

    def __init__(self, storage: "ConsolidatedStorage"):
        self.storage = storage
        self.base_dir = storage.base_dir

    def _category_file(self, category: str, subject: str) -> Path:
        return self.base_dir / category / f"{subject}_{LEGACY_CATEGORIES[category]}.json"

    def has_legacy_data(self) -> bool:
        for category in [*LEGACY_CATEGORIES, WEIGHTS_DIR]:
            directory = self.base_dir / category
            if directory.is_dir() and any(directory.iterdir()):
                return True
        return False

    def discover_subjects(self) -> list[str]:
        """Union of subject ids found across every legacy category."""
        subjects: set[str] = set()

        for category, suffix in LEGACY_CATEGORIES.items():
            directory = self.base_dir / category
            if not directory.is_dir():
                continue
            ending = f"_{suffix}.json"
            for path in directory.iterdir():
                if path.is_file() and path.name.endswith(ending):
                    subjects.add(path.name[: -len(ending)].lower())

        for subject, _ in self._weight_dirs():
            subjects.add(subject)

        return sorted(subjects)

    def _weight_dirs(self, subject: str | None = None) -> list[tuple[str, str]]:
        directory = self.base_dir / WEIGHTS_DIR
        if not directory.is_dir():
            return []
        found = []
        for path in sorted(directory.iterdir()):
            match = WEIGHTS_DIR_PATTERN.match(path.name)
            if not path.is_dir() or not match:
                continue
            legacy_subject = match.group("subject").lower()
            if subject is None or legacy_subject == subject:
                found.append((legacy_subject, match.group("variant").lower()))
        return found

    def migrate(self) -> MigrationSummary:
        """
        Migrate every discovered subject.

        Returns:
            Summary with per-category counts, collected errors, and one
            detail entry per subject.
        """
        summary = MigrationSummary()
        subjects = self.discover_subjects()
        logger.info(f"LegacyMigrator: Found {len(subjects)} subjects in {self.base_dir}")

        for subject in subjects:
            summary.details.append(self._migrate_subject(subject, summary))

        logger.info(
            f"LegacyMigrator: Migration completed - {summary.migrated_assets} assets, "
            f"{len(summary.errors)} errors"
        )
        return summary

    def _components(self, subject: str) -> list[tuple[str, Callable[[AssetRecord], int], str]]:
        components = []
        for category in LEGACY_CATEGORIES:
            if self._category_file(category, subject).is_file():
                components.append((category, getattr(self, f"_merge_{category}"), category))
        for _, variant in self._weight_dirs(subject):
            components.append(
                (f"weights:{variant}", self._weights_merger(subject, variant), "weights")
            )
        return components

    def _migrate_subject(self, subject: str, summary: MigrationSummary) -> dict[str, Any]:
        key = subject.upper()
        with self.storage._lock_for(key):
            return self._migrate_locked(subject, key, summary)

    def _migrate_locked(self, subject: str, key: str, summary: MigrationSummary) -> dict[str, Any]:
        """Merge every pending component of one subject. Caller holds the subject lock."""
        record = self.storage.load_asset_data(key).model_copy(deep=True)
        detail: dict[str, Any] = {"subject": key, "migrated": {}, "skipped": [], "errors": []}
        counts: dict[str, int] = {}
        errors: list[MigrationErrorInfo] = []

        for component, merge, counter in self._components(subject):
            if component in record.metadata.migrated_components:
                detail["skipped"].append(component)
                continue
            try:
                merged = merge(record)
            except Exception as e:
                failure = MigrationComponentFailure(key, component, e)
                logger.warning(f"LegacyMigrator: {failure}")
                errors.append(MigrationErrorInfo(subject=key, component=component, error=str(e)))
                continue
            record.metadata.migrated_components.append(component)
            counts[counter] = counts.get(counter, 0) + merged
            detail["migrated"][component] = merged

        if detail["migrated"]:
            try:
                self.storage.save_asset_data(key, record)
            except StorageError as e:
                logger.error(f"LegacyMigrator: Could not save {key} - {e}")
                errors.append(MigrationErrorInfo(subject=key, component="save", error=str(e)))
                detail["migrated"] = {}
                counts = {}
            else:
                summary.migrated_assets += 1

        summary.migrated_models += counts.get("models", 0)
        summary.migrated_weights += counts.get("weights", 0)
        summary.migrated_training += counts.get("training", 0)
        summary.migrated_predictions += counts.get("predictions", 0)
        summary.migrated_features += counts.get("features", 0)
        summary.errors.extend(errors)
        detail["errors"] = [e.component for e in errors]
        return detail

    # ------------------------------------------------------------------
    # Per-category mergers; each returns the number of items merged
    # ------------------------------------------------------------------

    def _merge_models(self, record: AssetRecord) -> int:
        path = self._category_file("models", record.subject.lower())
        document = _read_legacy_document(path)
        info = document.get("modelInfo")
        if not isinstance(info, dict):
            raise ValueError("modelInfo missing or not an object")
        original_timestamp = document.get("timestamp") or _file_mtime_ms(path)

        if info and all(isinstance(value, dict) for value in info.values()):
            for variant, variant_info in info.items():
                entry = record.models.get(variant.lower()) or VariantModel()
                entry.metadata.update(
                    {**variant_info, "migrated": True, "original_timestamp": original_timestamp}
                )
                record.models[variant.lower()] = entry
            return len(info)

        record.metadata.legacy_model_info = {
            **info,
            "migrated": True,
            "original_timestamp": original_timestamp,
        }
        return 1

    def _merge_training(self, record: AssetRecord) -> int:
        path = self._category_file("training", record.subject.lower())
        document = _read_legacy_document(path)
        results = document.get("trainingResults")
        if results is None:
            raise ValueError("trainingResults missing")
        entries = results if isinstance(results, list) else [results]
        if not all(isinstance(entry, dict) for entry in entries):
            raise ValueError("trainingResults entries must be objects")

        fallback = document.get("timestamp") or _file_mtime_ms(path)
        migrated = []
        for entry in entries:
            timestamp = entry.get("timestamp") or fallback
            migrated.append(
                {**entry, "timestamp": timestamp, "original_timestamp": timestamp, "migrated": True}
            )

        training = record.training
        training.history = sorted(
            training.history + migrated, key=lambda e: e.get("timestamp") or 0
        )[-self.storage.training_history_limit:]
        training.total_sessions += len(migrated)
        latest = max(e["timestamp"] for e in migrated) if migrated else None
        if latest and (training.last_training is None or latest > training.last_training):
            training.last_training = latest
        return len(migrated)

    def _merge_predictions(self, record: AssetRecord) -> int:
        path = self._category_file("predictions", record.subject.lower())
        document = _read_legacy_document(path)
        predictions = document.get("predictions")
        if not isinstance(predictions, list):
            raise ValueError("predictions missing or not a list")

        fallback = document.get("timestamp") or _file_mtime_ms(path)
        migrated = []
        for prediction in predictions:
            if not isinstance(prediction, dict):
                prediction = {"value": prediction}
            timestamp = prediction.get("timestamp") or fallback
            migrated.append(
                {**prediction, "timestamp": timestamp, "original_timestamp": timestamp, "migrated": True}
            )

        section = record.predictions
        section.history = sorted(
            section.history + migrated, key=lambda e: e.get("timestamp") or 0
        )[-self.storage.prediction_history_limit:]
        section.total_count += len(migrated)
        record.metadata.total_predictions_made += len(migrated)
        latest = max((e["timestamp"] for e in migrated), default=None)
        if latest and (section.last_prediction is None or latest > section.last_prediction):
            section.last_prediction = latest
        return len(migrated)

    def _merge_features(self, record: AssetRecord) -> int:
        path = self._category_file("features", record.subject.lower())
        document = _read_legacy_document(path)
        if "features" not in document:
            raise ValueError("features missing")

        original_timestamp = document.get("timestamp") or _file_mtime_ms(path)
        current = record.features
        if current.last_extraction is not None and current.last_extraction >= original_timestamp:
            return 0

        features = document["features"]
        if isinstance(features, dict):
            cache = {**features, "migrated": True, "original_timestamp": original_timestamp}
            count = len(features["features"]) if isinstance(features.get("features"), list) else len(features)
        else:
            cache = {"features": features, "migrated": True, "original_timestamp": original_timestamp}
            count = len(features) if isinstance(features, list) else 0
        record.features = FeatureSection(cache=cache, last_extraction=original_timestamp, count=count)
        return 1

    def _weights_merger(self, subject: str, variant: str) -> Callable[[AssetRecord], int]:
        directory = self.base_dir / WEIGHTS_DIR / f"{subject}_{variant}"

        def merge(record: AssetRecord) -> int:
            files = sorted(str(p) for p in directory.rglob("*") if p.is_file())
            if not files:
                raise ValueError(f"No weight files in {directory.name}")

            entry = record.models.get(variant) or VariantModel()
            if entry.weights is not None:
                return 0

            entry.status = "placeholder"
            entry.architecture = entry.architecture or variant
            entry.legacy_weights = {
                "directory": str(directory),
                "files": files,
                "migrated": True,
                "original_timestamp": _file_mtime_ms(directory),
                "note": "Requires a rebuild through the model runtime",
            }
            record.models[variant] = entry
            return 1

        return merge
