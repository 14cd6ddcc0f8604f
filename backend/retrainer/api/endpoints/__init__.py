"""
API endpoint modules.
"""

from retrainer.api.endpoints import storage, training

__all__ = ["storage", "training"]
