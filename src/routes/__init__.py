"""
API Routes
==========

Mount point for future route groups.

The composed router is included by the app under ``/api``. Feature modules
add their own ``APIRouter`` here with ``api_router.include_router(...)``.
"""

from fastapi import APIRouter

api_router = APIRouter(prefix="/api")
