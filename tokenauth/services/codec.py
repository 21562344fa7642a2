"""Credential codec: signed access tokens and hashed refresh secrets.

Access tokens are HMAC-signed JWTs carrying the owner id, the requesting
origin at issuance, the bind key of the paired refresh record and an
absolute expiry. Refresh secrets are random URL-safe strings that are only
ever persisted as Argon2 hashes.

The codec holds no mutable state: verification is a pure function of the
token, the configured key material and the current time.
"""

import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import HashingError, InvalidHashError, VerificationError
from jwt.exceptions import PyJWTError

from tokenauth.core.config import HMAC_ALGORITHMS, TokenConfig
from tokenauth.services.errors import (
    EntropyError,
    SecretMismatchError,
    SignatureInvalidError,
    SigningError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

# Argon2 hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

REFRESH_SECRET_BYTES = 32  # 256 bits
BIND_KEY_BYTES = 16  # 128 bits

_REQUIRED_CLAIMS = ["exp", "sub", "ip", "bind_key"]


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    owner_id: str
    origin: str
    bind_key: str
    expires_at: datetime


def _random_urlsafe(n_bytes: int) -> str:
    try:
        raw = secrets.token_bytes(n_bytes)
    except (OSError, NotImplementedError) as e:
        raise EntropyError() from e
    return base64.urlsafe_b64encode(raw).decode("ascii")


def generate_refresh_secret() -> str:
    """Generate a 256-bit URL-safe refresh secret."""
    return _random_urlsafe(REFRESH_SECRET_BYTES)


def generate_bind_key() -> str:
    """Generate a 128-bit URL-safe bind key (lookup key, not a credential)."""
    return _random_urlsafe(BIND_KEY_BYTES)


class CredentialCodec:
    """Mints and verifies access tokens and refresh secrets."""

    def __init__(self, config: TokenConfig, hasher: PasswordHasher | None = None):
        if config.algorithm not in HMAC_ALGORITHMS:
            raise ValueError(f"Unsupported signing algorithm: {config.algorithm}")
        if not set(config.allowed_algorithms) <= set(HMAC_ALGORITHMS):
            raise ValueError("Only HMAC algorithms may be accepted for verification")
        self.config = config
        self.hasher = hasher or ph

    # --- Access tokens ---

    def sign_access_token(
        self,
        owner_id: str,
        origin: str,
        bind_key: str,
        ttl: timedelta | None = None,
    ) -> str:
        """Create a signed access token bound to a refresh record."""
        now = datetime.now(UTC)
        expire = now + (ttl if ttl is not None else self.config.access_ttl)
        payload = {
            "sub": owner_id,
            "ip": origin,
            "bind_key": bind_key,
            "iat": int(now.timestamp()),
            "exp": int(expire.timestamp()),
        }
        try:
            token = jwt.encode(
                payload,
                self.config.signing_key,
                algorithm=self.config.algorithm,
            )
        except (PyJWTError, TypeError, ValueError) as e:
            raise SigningError() from e
        return str(token)

    def verify_access_token(self, token: str) -> AccessClaims:
        """Verify an access token and return its claims.

        Raises:
            TokenExpiredError: signature is valid but the token expired;
                the verified claims are available on ``.claims``.
            SignatureInvalidError: any other verification failure.
        """
        try:
            header = jwt.get_unverified_header(token)
        except PyJWTError as e:
            raise SignatureInvalidError() from e
        if header.get("alg") not in self.config.allowed_algorithms:
            logger.warning("Rejected access token signed with %r", header.get("alg"))
            raise SignatureInvalidError()

        try:
            payload = self._decode(token, verify_exp=True)
        except jwt.ExpiredSignatureError:
            # The signature was checked before expiry, so the claims are trustworthy
            try:
                payload = self._decode(token, verify_exp=False)
            except PyJWTError as e:
                raise SignatureInvalidError() from e
            raise TokenExpiredError(self._claims_from_payload(payload)) from None
        except PyJWTError as e:
            raise SignatureInvalidError() from e

        return self._claims_from_payload(payload)

    def _decode(self, token: str, verify_exp: bool) -> dict[str, Any]:
        return jwt.decode(
            token,
            self.config.signing_key,
            algorithms=list(self.config.allowed_algorithms),
            options={"require": _REQUIRED_CLAIMS, "verify_exp": verify_exp},
        )

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> AccessClaims:
        owner_id = payload.get("sub")
        origin = payload.get("ip")
        bind_key = payload.get("bind_key")
        exp = payload.get("exp")
        if not isinstance(owner_id, str) or not owner_id:
            raise SignatureInvalidError("Invalid access token claims")
        if not isinstance(origin, str):
            raise SignatureInvalidError("Invalid access token claims")
        if not isinstance(bind_key, str) or not bind_key:
            raise SignatureInvalidError("Invalid access token claims")
        return AccessClaims(
            owner_id=owner_id,
            origin=origin,
            bind_key=bind_key,
            expires_at=datetime.fromtimestamp(exp, tz=UTC),
        )

    # --- Refresh secrets ---

    generate_refresh_secret = staticmethod(generate_refresh_secret)
    generate_bind_key = staticmethod(generate_bind_key)

    def hash_refresh_secret(self, secret: str) -> str:
        """Hash a refresh secret using Argon2id."""
        try:
            return self.hasher.hash(secret)
        except HashingError as e:
            raise EntropyError() from e

    def verify_refresh_secret(self, secret: str, secret_hash: str) -> None:
        """Verify a refresh secret against its stored hash.

        Raises SecretMismatchError on mismatch or an unreadable hash.
        """
        try:
            self.hasher.verify(secret_hash, secret)
        except (VerificationError, InvalidHashError) as e:
            raise SecretMismatchError() from e
