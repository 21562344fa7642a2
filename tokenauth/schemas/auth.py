"""Pydantic schemas for the token API."""

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    """Response with a freshly issued credential pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiry in seconds")


class TokenPairRequest(BaseModel):
    """A previously issued pair, presented for rotation or revocation.

    Empty values are accepted here and rejected by the engine so that the
    error names which token is missing.
    """

    access_token: str = Field(default="", max_length=4096)
    refresh_token: str = Field(default="", max_length=512)


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
