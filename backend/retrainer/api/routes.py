"""
API route definitions.

This module defines all API endpoints for the application.
"""

from fastapi import APIRouter

from retrainer.api.endpoints import storage, training

router = APIRouter()

# Include all endpoint routers
router.include_router(
    training.router,
    prefix="/training",
    tags=["Training"],
)

router.include_router(
    storage.router,
    prefix="/storage",
    tags=["Storage"],
)
