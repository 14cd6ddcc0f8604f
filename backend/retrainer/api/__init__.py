"""
API route handlers.

This module exports all API routers used in the application.
"""

from retrainer.api.routes import router

__all__ = ["router"]
