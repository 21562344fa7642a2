# tokenauth Models
from tokenauth.models.refresh_token import RefreshToken

__all__ = [
    "RefreshToken",
]
