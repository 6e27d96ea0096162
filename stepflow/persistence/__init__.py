"""Execution snapshot storage backends."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import StepflowConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

logger = logging.getLogger(__name__)

_repository_instance: ExecutionRepository | None = None


def open_repository(database_url: Optional[str]) -> ExecutionRepository:
    """Build a fresh repository for ``database_url``.

    ``sqlite://<path>`` and ``postgres(ql)://...`` URLs are understood.
    An empty URL gives an in-memory repository.
    """
    if not database_url:
        return InMemoryExecutionRepository()

    scheme, _, rest = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteExecutionRepository(rest)
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresExecutionRepository

        return PostgresExecutionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> ExecutionRepository:
    """Return the process-wide execution repository.

    Called without arguments this hands back the cached instance. Otherwise
    the URL is taken from ``database_url``, then ``STEPFLOW_DATABASE_URL``
    or ``DATABASE_URL``, then the loaded config, and the result replaces
    the cached instance.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    url = (
        database_url
        or os.getenv("STEPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = open_repository(url)
    logger.debug(f"Using {type(_repository_instance).__name__}")
    return _repository_instance


__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "get_repository",
    "open_repository",
]
