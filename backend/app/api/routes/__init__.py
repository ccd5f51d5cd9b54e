"""API route registrations."""
from fastapi import APIRouter

from app.api.routes import rate_limit


api_router = APIRouter()
api_router.include_router(rate_limit.router)

__all__ = ["api_router"]
