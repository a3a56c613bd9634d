"""Persistence layer for waypoint runs, checkpoints and escalations."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .inmemory import InMemoryEscalationStore, InMemoryWorkflowRepository
from .models import (
    Checkpoint,
    Escalation,
    EscalationFilter,
    EscalationMetrics,
    EscalationStatus,
    RunRecord,
)
from .repository import EscalationStore, WorkflowRepository
from .sqlite import SQLiteEscalationStore, SQLiteWorkflowRepository
from .status_file import StatusFileWriter

_repository_instance: WorkflowRepository | None = None
_escalation_store_instance: EscalationStore | None = None


def _resolve_database_url(
    database_url: Optional[str], config: Optional[WaypointConfig]
) -> Optional[str]:
    config = config or load_config()
    return (
        database_url
        or os.getenv("WAYPOINT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )


def _sqlite_path(database_url: str) -> str:
    if not database_url.startswith("sqlite://"):
        raise ValueError(f"Unsupported database backend: {database_url}")
    return database_url.replace("sqlite://", "", 1)


def get_repository(
    database_url: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain the run/checkpoint repository.

    The backend is selected from ``database_url``, the ``WAYPOINT_DATABASE_URL``
    or ``DATABASE_URL`` environment variables, or the loaded configuration.
    Without a database an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    database_url = _resolve_database_url(database_url, config)
    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
    else:
        _repository_instance = SQLiteWorkflowRepository(_sqlite_path(database_url))
    return _repository_instance


def get_escalation_store(
    database_url: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> EscalationStore:
    """Factory function to obtain the escalation store (same rules as ``get_repository``)."""

    global _escalation_store_instance
    if (
        _escalation_store_instance is not None
        and database_url is None
        and config is None
    ):
        return _escalation_store_instance

    database_url = _resolve_database_url(database_url, config)
    if not database_url:
        _escalation_store_instance = InMemoryEscalationStore()
    else:
        _escalation_store_instance = SQLiteEscalationStore(_sqlite_path(database_url))
    return _escalation_store_instance


__all__ = [
    "Checkpoint",
    "Escalation",
    "EscalationFilter",
    "EscalationMetrics",
    "EscalationStatus",
    "EscalationStore",
    "InMemoryEscalationStore",
    "InMemoryWorkflowRepository",
    "RunRecord",
    "SQLiteEscalationStore",
    "SQLiteWorkflowRepository",
    "StatusFileWriter",
    "WorkflowRepository",
    "get_escalation_store",
    "get_repository",
]
