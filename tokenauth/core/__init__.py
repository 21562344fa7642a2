# tokenauth Core Module
from .config import TokenConfig, get_settings, settings
from .database import Base, async_session_maker, check_db_connection, engine, get_session_maker
from .logging import setup_logging

__all__ = [
    "settings",
    "get_settings",
    "TokenConfig",
    "setup_logging",
    "Base",
    "engine",
    "async_session_maker",
    "get_session_maker",
    "check_db_connection",
]
