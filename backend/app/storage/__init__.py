"""Persistence backends for the messaging core.

Two interchangeable implementations of ``MessageLog`` are provided:

- InMemoryMessageLog: per-instance dicts, for tests and local development
- DuckDBMessageLog: durable embedded database file

``create_backend`` picks one from the ``storage`` config section.
"""
import logging

from app.config import StorageSettings

from .base import MessageLog
from .duckdb_store import DuckDBMessageLog
from .memory import InMemoryMessageLog

logger = logging.getLogger(__name__)


def create_backend(settings: StorageSettings) -> MessageLog:
    """Build the configured storage backend."""
    if settings.backend == "duckdb":
        logger.info("Using DuckDB storage at %s", settings.path)
        return DuckDBMessageLog(db_path=settings.path)
    logger.info("Using in-memory storage (messages are lost on restart)")
    return InMemoryMessageLog()


__all__ = [
    "DuckDBMessageLog",
    "InMemoryMessageLog",
    "MessageLog",
    "create_backend",
]
