"""Error taxonomy for credential issuance and rotation.

Every failure surfaced by the core is a TokenAuthError subclass carrying an
ErrorKind. The HTTP layer maps kinds to status codes; the core itself never
deals in transport statuses.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification of a failed operation."""

    INVALID_IDENTIFIER = "InvalidIdentifier"
    INVALID_ORIGIN = "InvalidOrigin"
    INVALID_INPUT = "InvalidInput"
    SIGNATURE_INVALID = "SignatureInvalid"
    TOKEN_EXPIRED = "TokenExpired"
    RECORD_NOT_FOUND = "RecordNotFound"
    SECRET_MISMATCH = "SecretMismatch"
    RECORD_REVOKED = "RecordRevoked"
    RECORD_EXPIRED = "RecordExpired"
    STORAGE_FAILURE = "StorageFailure"
    ALREADY_EXISTS = "AlreadyExists"
    SIGNING_FAILURE = "SigningFailure"
    ENTROPY_FAILURE = "EntropyFailure"


class TokenAuthError(Exception):
    """Base error for the token core."""

    kind: ErrorKind = ErrorKind.STORAGE_FAILURE
    default_message = "Token operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidIdentifierError(TokenAuthError):
    """Account or bind identifier is malformed."""

    kind = ErrorKind.INVALID_IDENTIFIER
    default_message = "Invalid user identifier"


class InvalidOriginError(TokenAuthError):
    """Requesting address is missing or unparsable."""

    kind = ErrorKind.INVALID_ORIGIN
    default_message = "Invalid client IP"


class InvalidInputError(TokenAuthError):
    """Access or refresh token missing from a rotation request."""

    kind = ErrorKind.INVALID_INPUT
    default_message = "Invalid request"


class SignatureInvalidError(TokenAuthError):
    """Access token failed verification for a reason other than expiry."""

    kind = ErrorKind.SIGNATURE_INVALID
    default_message = "Invalid access token"


class TokenExpiredError(TokenAuthError):
    """Access token signature is valid but the token has expired.

    The verified claims are attached so callers can still correlate the
    token with its refresh record.
    """

    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Access token is expired"

    def __init__(self, claims: Any, message: str | None = None):
        super().__init__(message)
        self.claims = claims


class RecordNotFoundError(TokenAuthError):
    kind = ErrorKind.RECORD_NOT_FOUND
    default_message = "Refresh token does not exist"


class SecretMismatchError(TokenAuthError):
    kind = ErrorKind.SECRET_MISMATCH
    default_message = "Invalid refresh token"


class RecordRevokedError(TokenAuthError):
    kind = ErrorKind.RECORD_REVOKED
    default_message = "Refresh token is revoked"


class RecordExpiredError(TokenAuthError):
    kind = ErrorKind.RECORD_EXPIRED
    default_message = "Refresh token has expired"


class StorageError(TokenAuthError):
    """Persistence layer unreachable or errored."""

    kind = ErrorKind.STORAGE_FAILURE
    default_message = "Token storage failure"


class RecordExistsError(StorageError):
    """A unique column (bind key or secret hash) collided with an existing row."""

    kind = ErrorKind.ALREADY_EXISTS
    default_message = "Refresh token already exists"


class SigningError(TokenAuthError):
    kind = ErrorKind.SIGNING_FAILURE
    default_message = "Failed to generate access token"


class EntropyError(TokenAuthError):
    kind = ErrorKind.ENTROPY_FAILURE
    default_message = "Failed to generate refresh token"
