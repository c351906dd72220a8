"""Dunning admin app module.

Provides the FastAPI routers for the dunning admin API and the public
opt-out endpoint.
"""

from .api_admin import public_router, router as admin_router

__all__ = [
    "admin_router",
    "public_router",
]
