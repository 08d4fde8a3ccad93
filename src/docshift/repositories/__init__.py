"""
Persistence for migration state: the registry control plane and backups.
"""

from docshift.repositories.backups import (
    DEFAULT_ROLLBACK_WINDOW,
    BackupContents,
    BackupRecord,
    BackupStore,
    FileBackupStore,
    InMemoryBackupStore,
    compute_checksum,
)
from docshift.repositories.control_plane import (
    ControlPlaneRecord,
    ControlPlaneRepository,
    InMemoryControlPlaneRepository,
    SQLAlchemyControlPlaneRepository,
    SQLiteControlPlaneRepository,
)

__all__ = [
    "DEFAULT_ROLLBACK_WINDOW",
    "BackupContents",
    "BackupRecord",
    "BackupStore",
    "ControlPlaneRecord",
    "ControlPlaneRepository",
    "FileBackupStore",
    "InMemoryBackupStore",
    "InMemoryControlPlaneRepository",
    "SQLAlchemyControlPlaneRepository",
    "SQLiteControlPlaneRepository",
    "compute_checksum",
]
