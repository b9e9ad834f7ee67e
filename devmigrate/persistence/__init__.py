"""Persistence layer for migration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import MigrationConfig, load_config
from ..constants import STATE_URL_ENV_VAR
from .inmemory import InMemoryStateStore
from .repository import StateStore
from .sqlite import SQLiteStateStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresStateStore
except Exception:  # pragma: no cover - optional dependency
    PostgresStateStore = None  # type: ignore

_store_instance: StateStore | None = None


def get_state_store(
    state_url: Optional[str] = None, config: Optional[MigrationConfig] = None
) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected from ``state_url``, which can be provided
    explicitly, via the ``DEVMIGRATE_STATE_URL`` environment variable, or from
    the configuration's ``state_url``. Without any of those, a SQLite store at
    ``local_state_path`` is used. ``memory://`` selects the in-memory store.
    """

    global _store_instance
    if _store_instance is not None and state_url is None and config is None:
        return _store_instance

    config = config or load_config()
    state_url = (
        state_url
        or os.getenv(STATE_URL_ENV_VAR)
        or config.state_url
        or f"sqlite://{config.local_state_path}"
    )

    if state_url.startswith("memory://"):
        _store_instance = InMemoryStateStore()
    elif state_url.startswith("sqlite://"):
        path = state_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteStateStore(path)
    elif state_url.startswith("postgres://") or state_url.startswith("postgresql://"):
        if PostgresStateStore is None:
            raise RuntimeError("Postgres support not available")
        _store_instance = PostgresStateStore(state_url)
    else:
        raise ValueError(f"Unsupported state store backend: {state_url}")

    return _store_instance


def reset_state_store() -> None:
    global _store_instance
    _store_instance = None


__all__ = [
    "StateStore",
    "InMemoryStateStore",
    "SQLiteStateStore",
    "PostgresStateStore",
    "get_state_store",
    "reset_state_store",
]
