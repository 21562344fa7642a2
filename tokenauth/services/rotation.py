"""Credential issuance and refresh-token rotation.

RotationEngine.issue() creates the first (access, refresh) pair for an
owner. RotationEngine.rotate() exchanges a previously issued pair for a new
one. Each call is a single run of the rotation state machine:

    ParsingInput -> ValidatingAccessSignature -> CorrelatingOrigin ->
    LoadingRefreshRecord -> ValidatingRefreshSecret -> CheckingRevocation ->
    CheckingExpiry -> Rotating -> Done

Any failure short-circuits with exactly one TokenAuthError. Best-effort side
effects (origin-change notification, opportunistic revocation) are logged
and never change the outcome.

Ordering rules:
- The refresh secret is checked before the revoked/expired flags, so a
  caller without the secret learns nothing about the record's state.
- The old record is revoked only after the new pair has been stored and
  signed. A failure in between leaves two live records rather than none;
  the old one is revoked on the next attempt or simply expires.

Two concurrent rotations of the same pair may both succeed; the store's
unique constraints prevent duplicate bind keys but not double issuance.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from tokenauth.services.codec import AccessClaims, CredentialCodec
from tokenauth.services.errors import (
    InvalidIdentifierError,
    InvalidInputError,
    InvalidOriginError,
    RecordExpiredError,
    RecordRevokedError,
    SignatureInvalidError,
    SigningError,
    TokenAuthError,
    TokenExpiredError,
)
from tokenauth.services.notifier import Notifier, dispatch_notification
from tokenauth.services.token_store import TokenStore, utc_now

logger = logging.getLogger(__name__)

OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:@-]{1,255}$")


class RotationState(StrEnum):
    PARSING_INPUT = "ParsingInput"
    VALIDATING_ACCESS_SIGNATURE = "ValidatingAccessSignature"
    CORRELATING_ORIGIN = "CorrelatingOrigin"
    LOADING_REFRESH_RECORD = "LoadingRefreshRecord"
    VALIDATING_REFRESH_SECRET = "ValidatingRefreshSecret"
    CHECKING_REVOCATION = "CheckingRevocation"
    CHECKING_EXPIRY = "CheckingExpiry"
    ROTATING = "Rotating"
    DONE = "Done"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def validate_owner_id(owner_id: str | None) -> str:
    """Return the owner id if well formed, else raise InvalidIdentifierError."""
    if not owner_id or not OWNER_ID_PATTERN.match(owner_id):
        raise InvalidIdentifierError()
    return owner_id


class RotationEngine:
    """Issues, rotates and revokes credential pairs."""

    def __init__(
        self,
        codec: CredentialCodec,
        store: TokenStore,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        recipient_template: str = "{owner_id}",
    ):
        self.codec = codec
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.recipient_template = recipient_template

    async def issue(self, owner_id: str, origin: str) -> TokenPair:
        """Create a fresh refresh record and a matching access token.

        ``origin`` is the bare host of the requester.
        """
        owner_id = validate_owner_id(owner_id)
        if not origin:
            raise InvalidOriginError("Can not get client IP")

        pair = await self._mint(owner_id, origin)
        logger.info("Issued credentials for %s", owner_id)
        return pair

    async def rotate(self, access_token: str, refresh_token: str, origin: str) -> TokenPair:
        """Exchange a valid (access, refresh) pair for a new pair."""
        state = RotationState.PARSING_INPUT
        try:
            if not origin:
                raise InvalidOriginError("Can not get client IP")
            if not access_token:
                raise InvalidInputError("Access token is empty")
            if not refresh_token:
                raise InvalidInputError("Refresh token is empty")

            state = RotationState.VALIDATING_ACCESS_SIGNATURE
            claims = self._read_access_claims(access_token)

            state = RotationState.CORRELATING_ORIGIN
            if claims.origin != origin:
                self._notify_origin_change(claims.owner_id, origin)

            state = RotationState.LOADING_REFRESH_RECORD
            record = await self.store.get(claims.bind_key)

            state = RotationState.VALIDATING_REFRESH_SECRET
            self.codec.verify_refresh_secret(refresh_token, record.secret_hash)
            if record.owner_id != claims.owner_id:
                raise SignatureInvalidError("Access token does not match refresh token")

            state = RotationState.CHECKING_REVOCATION
            if record.is_revoked:
                raise RecordRevokedError()

            state = RotationState.CHECKING_EXPIRY
            if record.is_expired(self.clock()):
                await self._revoke_quietly(record.bind_key, "expired refresh token")
                raise RecordExpiredError()

            state = RotationState.ROTATING
            pair = await self._mint(record.owner_id, origin)
            await self._revoke_quietly(record.bind_key, "used refresh token")
        except TokenAuthError as e:
            logger.error("Refresh failed at %s: %s (%s)", state, e.message, e.kind)
            raise

        logger.info("Rotated credentials for %s", record.owner_id)
        return pair

    async def revoke(self, access_token: str, refresh_token: str) -> None:
        """Revoke the refresh record bound to a pair (logout).

        The pair must still prove possession of the refresh secret. An
        expired access token is accepted; revoking an already revoked
        record succeeds.
        """
        if not access_token:
            raise InvalidInputError("Access token is empty")
        if not refresh_token:
            raise InvalidInputError("Refresh token is empty")

        claims = self._read_access_claims(access_token)
        record = await self.store.get(claims.bind_key)
        self.codec.verify_refresh_secret(refresh_token, record.secret_hash)
        if record.owner_id != claims.owner_id:
            raise SignatureInvalidError("Access token does not match refresh token")

        await self.store.revoke(record.bind_key)
        logger.info("Revoked refresh token for %s", record.owner_id)

    def _read_access_claims(self, access_token: str) -> AccessClaims:
        """Verify the access token, tolerating expiry."""
        try:
            return self.codec.verify_access_token(access_token)
        except TokenExpiredError as e:
            logger.debug("Access token expired, continuing with its claims")
            return e.claims

    async def _mint(self, owner_id: str, origin: str) -> TokenPair:
        secret = self.codec.generate_refresh_secret()
        secret_hash = self.codec.hash_refresh_secret(secret)
        bind_key = self.codec.generate_bind_key()

        await self.store.create(owner_id, bind_key, secret_hash, self.codec.config.refresh_ttl)

        try:
            access_token = self.codec.sign_access_token(owner_id, origin, bind_key)
        except SigningError:
            logger.error("Failed to sign access token for %s", owner_id)
            await self._revoke_quietly(bind_key, "orphaned refresh token")
            raise

        return TokenPair(access_token=access_token, refresh_token=secret)

    async def _revoke_quietly(self, bind_key: str, reason: str) -> None:
        try:
            await self.store.revoke(bind_key)
        except TokenAuthError as e:
            logger.error("Failed to revoke %s: %s", reason, e.message)

    def _notify_origin_change(self, owner_id: str, origin: str) -> None:
        logger.warning("Refresh for %s requested from new origin %s", owner_id, origin)
        try:
            recipient = self.recipient_template.format(owner_id=owner_id)
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            logger.error("Bad notification recipient template %r: %s", self.recipient_template, e)
            return
        dispatch_notification(self.notifier, recipient, origin)
