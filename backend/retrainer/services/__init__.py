"""
Persistence and training services.

This module exports the storage engine and its helpers.
"""

from retrainer.services.asset_storage import ConsolidatedStorage
from retrainer.services.cooldown_registry import CooldownRegistry
from retrainer.services.legacy_migration import LegacyMigrator

__all__ = [
    "ConsolidatedStorage",
    "CooldownRegistry",
    "LegacyMigrator",
]
