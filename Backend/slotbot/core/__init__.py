"""
Core module - configuration, database, errors, logging and response formatting.
"""
from .config import Settings, get_settings
from .db import AsyncSessionLocal, Base, build_engine, engine
from .errors import (
    BotError,
    ConflictError,
    ErrorCodes,
    NotFoundError,
    OwnershipError,
    PersistenceError,
    ValidationError,
)
from .logging_setup import configure_logging
from .responses import bot_error_response, error_response, success_response

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "AsyncSessionLocal",
    "Base",
    "build_engine",
    "engine",
    # Errors
    "BotError",
    "ConflictError",
    "ErrorCodes",
    "NotFoundError",
    "OwnershipError",
    "PersistenceError",
    "ValidationError",
    # Logging
    "configure_logging",
    # Responses
    "bot_error_response",
    "error_response",
    "success_response",
]
