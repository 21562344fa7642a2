"""Middleware module for tokenauth."""

from tokenauth.middleware.request_id import RequestIDMiddleware
from tokenauth.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "RequestIDMiddleware",
    "SecurityHeadersMiddleware",
]
