"""
Model Retraining Manager.

This package schedules periodic and on-demand retraining of per-subject
model variants and persists the trained results in one consolidated
document per subject.
"""

__version__ = "1.0.0"
