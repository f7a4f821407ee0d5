"""Infra layer: SQLite storage, logging, the service facade and the CLI."""

from tp_posting.infra.errors import (
    DatabaseOperationError,
    InfraError,
    ReferenceDataError,
    SchemaVersionMismatchError,
)
from tp_posting.infra.local_database import LocalDatabase, configure_connection

__all__ = [
    "DatabaseOperationError",
    "InfraError",
    "LocalDatabase",
    "ReferenceDataError",
    "SchemaVersionMismatchError",
    "configure_connection",
]
