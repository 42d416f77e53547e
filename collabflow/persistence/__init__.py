"""Persistence layer for approvals and workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CollabFlowConfig, load_config
from .inmemory import InMemoryRepository
from .repository import ApprovalRepository, Repository, WorkflowRepository
from .sqlite import SQLiteRepository

_repository_instance: Repository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[CollabFlowConfig] = None
) -> Repository:
    """Factory function to obtain a repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``COLLABFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("COLLABFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresRepository

        _repository_instance = PostgresRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository so the next lookup re-reads configuration."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "ApprovalRepository",
    "WorkflowRepository",
    "Repository",
    "InMemoryRepository",
    "SQLiteRepository",
    "get_repository",
    "reset_repository",
]
