"""tokenauth: short-lived access tokens and rotating refresh tokens."""

__version__ = "1.0.0"
