"""Execution and definition storage backends."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import PracticeflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    DelayWait,
    ExecutionStatus,
    FailureCode,
    FieldChangeWait,
    HistoryEntry,
    TERMINAL_STATUSES,
    WorkflowExecution,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def _database_url(
    database_url: Optional[str], config: Optional[PracticeflowConfig]
) -> Optional[str]:
    if database_url:
        return database_url
    env_url = os.getenv("PRACTICEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    return (config or load_config()).database_url


def _open(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        return InMemoryWorkflowRepository()
    if database_url.startswith("sqlite://"):
        return SQLiteWorkflowRepository(database_url[len("sqlite://"):])
    if database_url.startswith(_POSTGRES_SCHEMES):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support needs the asyncpg package")
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[PracticeflowConfig] = None
) -> WorkflowRepository:
    """Return the workflow repository for ``database_url``.

    The URL comes from the argument, then ``PRACTICEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, then ``config.database_url``. ``sqlite://<path>`` and
    ``postgresql://`` URLs select those backends; no URL at all means an
    in-memory repository. Called without arguments the last repository built
    is reused, so the engine and the dispatcher share one store.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = _database_url(database_url, config)
    _repository_instance = _open(url)
    logger.debug(f"Using {type(_repository_instance).__name__} for workflow state")
    return _repository_instance


__all__ = [
    "DelayWait",
    "ExecutionStatus",
    "FailureCode",
    "FieldChangeWait",
    "HistoryEntry",
    "TERMINAL_STATUSES",
    "WorkflowExecution",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
