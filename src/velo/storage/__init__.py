"""Storage layer for the relayer's local state."""

from velo.storage.database import (
    Base,
    DatabaseManager,
    SpentNullifier,
    get_db_manager,
    reset_db_manager,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "SpentNullifier",
    "get_db_manager",
    "reset_db_manager",
]
