"""
Remove the legacy per-category storage layout after migration.

This script:
1. Verifies that consolidated documents exist
2. Reports the size of every legacy directory (dry run)
3. With --confirm, copies each legacy directory into
   <storage_dir>/legacy_backup_<epoch_ms>/ and then deletes it

Usage:
    python -m scripts.cleanup_legacy_storage [--confirm] [--storage-dir PATH]
"""

import argparse
import logging
import shutil
from pathlib import Path

from retrainer.core.clock import now_ms
from retrainer.core.config import settings
from retrainer.services.asset_storage import DOCUMENT_SUFFIX
from retrainer.services.legacy_migration import LEGACY_CATEGORIES, WEIGHTS_DIR

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LEGACY_DIRS = [*LEGACY_CATEGORIES, WEIGHTS_DIR]


def directory_size(path: Path) -> tuple[int, int]:
    """(total bytes, file count) of everything below ``path``."""
    total = 0
    count = 0
    for item in path.rglob("*"):
        if item.is_file():
            total += item.stat().st_size
            count += 1
    return total, count


def check_migration_success(base_dir: Path) -> bool:
    consolidated_dir = base_dir / "consolidated"
    if not consolidated_dir.is_dir():
        logger.error("No consolidated directory found. Migration may not have run.")
        return False

    documents = list(consolidated_dir.glob(f"*{DOCUMENT_SUFFIX}"))
    if not documents:
        logger.error("No consolidated files found. Migration may not have run.")
        return False

    logger.info(f"Found {len(documents)} consolidated files")
    return True


def analyze_legacy_files(base_dir: Path) -> dict[str, dict[str, float]]:
    """Size and file count of each legacy directory that still exists."""
    analysis = {}
    for name in LEGACY_DIRS:
        path = base_dir / name
        if path.is_dir():
            total, count = directory_size(path)
            analysis[name] = {
                "total_size": total,
                "file_count": count,
                "size_mb": round(total / (1024 * 1024), 2),
            }
    return analysis


def cleanup_legacy_files(base_dir: Path, confirmed: bool = False) -> Path | None:
    """
    Back up and delete every legacy directory.

    Args:
        base_dir: Storage root.
        confirmed: Nothing is touched unless True.

    Returns:
        The backup directory, or None if nothing was done.
    """
    if not confirmed:
        logger.warning("Cleanup not confirmed. Re-run with --confirm to delete files.")
        return None

    if not check_migration_success(base_dir):
        logger.error("Cannot cleanup - migration verification failed")
        return None

    backup_dir = base_dir / f"legacy_backup_{now_ms()}"
    backup_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Creating final backup in: {backup_dir}")

    deleted = 0
    for name in LEGACY_DIRS:
        path = base_dir / name
        if not path.is_dir():
            continue
        try:
            shutil.copytree(path, backup_dir / name)
            shutil.rmtree(path)
            deleted += 1
            logger.info(f"Deleted legacy directory: {name}")
        except OSError as e:
            logger.error(f"Failed to delete {name}: {e}")

    logger.info(f"Cleanup completed. Deleted {deleted} directories.")
    logger.info(f"Backup available at: {backup_dir}")
    return backup_dir


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Remove the legacy storage layout after migration")
    parser.add_argument("--confirm", action="store_true", help="Actually back up and delete")
    parser.add_argument("--storage-dir", type=Path, default=settings.storage_dir)
    args = parser.parse_args(argv)

    base_dir: Path = args.storage_dir
    logger.info(f"Analyzing legacy storage in {base_dir}")

    if not check_migration_success(base_dir):
        return 1

    analysis = analyze_legacy_files(base_dir)
    if not analysis:
        logger.info("No legacy files found to clean up.")
        return 0

    total = sum(info["total_size"] for info in analysis.values())
    logger.info(f"Legacy directories: {len(analysis)}, total size {total / (1024 * 1024):.2f} MB")
    for name, info in analysis.items():
        logger.info(f"  {name}/: {info['file_count']} files, {info['size_mb']} MB")

    if not args.confirm:
        logger.warning("This will permanently delete the directories above (a backup is kept).")
        logger.warning("To proceed, run: python -m scripts.cleanup_legacy_storage --confirm")
        return 0

    return 0 if cleanup_legacy_files(base_dir, confirmed=True) else 1


if __name__ == "__main__":
    raise SystemExit(main())
