"""Liveness of the service and of the refresh token table."""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenauth.core import check_db_connection, get_session_maker, settings
from tokenauth.services.token_store import SqlTokenStore

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    token_store: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Database or token table unavailable"},
    },
)
async def health_check(
    response: Response,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> HealthResponse:
    """Report 503 unless the database answers and the token table is readable."""
    db_ok = await check_db_connection(session_maker)
    store_ok = db_ok and await SqlTokenStore(session_maker).ping()

    if not store_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if store_ok else "unhealthy",
        version=settings.app_version,
        database="connected" if db_ok else "disconnected",
        token_store="ready" if store_ok else "unavailable",
    )
