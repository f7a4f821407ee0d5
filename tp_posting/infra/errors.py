"""Infra-layer errors for SQLite storage."""
from __future__ import annotations

from dataclasses import dataclass


class InfraError(RuntimeError):
    """Base of every infra-layer error."""


@dataclass(eq=True)
class SchemaVersionMismatchError(InfraError):
    """The database schema version differs from the one this build expects."""

    expected_version: int
    actual_version: int
    message: str

    def __str__(self) -> str:
        return f"{self.message} (expected={self.expected_version}, actual={self.actual_version})"


@dataclass(eq=True)
class DatabaseOperationError(InfraError):
    """A SQLite operation failed; carries a readable message."""

    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(eq=True)
class ReferenceDataError(InfraError):
    """A seed payload is missing a section or has a malformed row."""

    section: str
    message: str

    def __str__(self) -> str:
        return f"{self.section}: {self.message}"


__all__ = [
    "InfraError",
    "SchemaVersionMismatchError",
    "DatabaseOperationError",
    "ReferenceDataError",
]
