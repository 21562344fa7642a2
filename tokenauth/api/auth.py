"""Token API endpoints: issue, refresh and revoke credential pairs."""

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenauth.core import get_session_maker, settings
from tokenauth.core.request_utils import get_request_origin, split_host_port
from tokenauth.schemas.auth import MessageResponse, TokenPairRequest, TokenResponse
from tokenauth.services.codec import CredentialCodec
from tokenauth.services.errors import ErrorKind, TokenAuthError
from tokenauth.services.notifier import LogNotifier, Notifier, WebhookNotifier
from tokenauth.services.rotation import RotationEngine, TokenPair
from tokenauth.services.token_store import SqlTokenStore, TokenStore

logger = logging.getLogger(__name__)

# Failures caused by the server rather than by the presented credentials
_SERVER_ERRORS = {
    ErrorKind.STORAGE_FAILURE,
    ErrorKind.ALREADY_EXISTS,
    ErrorKind.SIGNING_FAILURE,
    ErrorKind.ENTROPY_FAILURE,
}

# Server failures reported with their class's fixed message
_OWN_MESSAGE_ERRORS = {ErrorKind.SIGNING_FAILURE, ErrorKind.ENTROPY_FAILURE}

router = APIRouter(prefix="/auth", tags=["auth"])


@lru_cache
def get_codec() -> CredentialCodec:
    """Dependency to get the credential codec (one per process)."""
    return CredentialCodec(settings.token_config())


def get_token_store(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> TokenStore:
    """Dependency to get the token store."""
    return SqlTokenStore(session_maker)


def get_notifier() -> Notifier:
    """Dependency to get the origin-change notifier."""
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LogNotifier(sender=settings.app_name)


def get_rotation_engine(
    codec: CredentialCodec = Depends(get_codec),
    store: TokenStore = Depends(get_token_store),
    notifier: Notifier = Depends(get_notifier),
) -> RotationEngine:
    """Dependency to get the rotation engine."""
    return RotationEngine(
        codec,
        store,
        notifier,
        recipient_template=settings.notify_recipient_template,
    )


def _http_error(e: TokenAuthError, server_message: str) -> HTTPException:
    """Map a core error kind to an HTTP error."""
    if e.kind in _SERVER_ERRORS:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=e.default_message if e.kind in _OWN_MESSAGE_ERRORS else server_message,
        )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=e.message,
    )


def _token_response(pair: TokenPair, codec: CredentialCodec) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=int(codec.config.access_ttl.total_seconds()),
    )


@router.post("/tokens/{owner_id}", response_model=TokenResponse)
async def issue_tokens(
    owner_id: str,
    request: Request,
    engine: RotationEngine = Depends(get_rotation_engine),
) -> TokenResponse:
    """Issue a new access/refresh pair for an account.

    The requesting origin is recorded in the access token and compared on
    every later refresh.
    """
    try:
        origin = split_host_port(get_request_origin(request, settings.origin_source))
        pair = await engine.issue(owner_id, origin)
    except TokenAuthError as e:
        logger.error(f"Failed to issue tokens: {e.message}")
        raise _http_error(e, "Failed to save refresh token") from e
    return _token_response(pair, engine.codec)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    body: TokenPairRequest,
    request: Request,
    engine: RotationEngine = Depends(get_rotation_engine),
) -> TokenResponse:
    """Rotate a credential pair.

    Returns new access and refresh tokens; the presented refresh token is
    revoked.
    """
    try:
        origin = split_host_port(get_request_origin(request, settings.origin_source))
        pair = await engine.rotate(body.access_token, body.refresh_token, origin)
    except TokenAuthError as e:
        raise _http_error(e, "Failed to save new refresh token") from e
    return _token_response(pair, engine.codec)


@router.post("/revoke", response_model=MessageResponse)
async def revoke_tokens(
    body: TokenPairRequest,
    engine: RotationEngine = Depends(get_rotation_engine),
) -> MessageResponse:
    """Revoke the refresh token of a pair (logout)."""
    try:
        await engine.revoke(body.access_token, body.refresh_token)
    except TokenAuthError as e:
        logger.error(f"Failed to revoke tokens: {e.message}")
        raise _http_error(e, "Failed to revoke refresh token") from e
    return MessageResponse(message="Refresh token revoked")
