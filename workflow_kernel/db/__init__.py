"""Database layer: engine, declarative base, column types, listeners."""

from workflow_kernel.db.base import Base, TrackedBase, UUIDString
from workflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    is_sqlite,
    reset_engine,
    session_scope,
)
from workflow_kernel.db.types import UTCDateTime

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "UTCDateTime",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "is_postgres",
    "is_sqlite",
    "reset_engine",
    "session_scope",
]
