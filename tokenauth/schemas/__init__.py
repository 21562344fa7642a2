# tokenauth Pydantic Schemas
from tokenauth.schemas.auth import MessageResponse, TokenPairRequest, TokenResponse

__all__ = [
    "MessageResponse",
    "TokenPairRequest",
    "TokenResponse",
]
