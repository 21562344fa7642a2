"""tokenauth API Router - aggregates all API routes."""

from fastapi import APIRouter

from tokenauth.api import auth, health

api_router = APIRouter()

api_router.include_router(health.router)  # Health at root level
api_router.include_router(auth.router)  # Auth at /auth
