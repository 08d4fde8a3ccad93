"""
Backup stores used by the safety checks and the rollback manager.

A backup is a full export of one or more collections plus a manifest with
per-collection document counts and a SHA-256 checksum over the canonical
JSON of every document. A backup is only usable once ``verify`` has
re-read it and matched the checksum.

Implementations:
- InMemoryBackupStore: For tests
- FileBackupStore: One directory per backup (manifest.json + <collection>.json)
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from docshift.exceptions import BackupIntegrityError
from docshift.observability import (
    ATTR_BACKUP_ID,
    ATTR_DOCUMENT_COUNT,
    ATTR_ENVIRONMENT,
    Tracer,
    create_tracer,
)
from docshift.stores.interface import Document, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_ROLLBACK_WINDOW = timedelta(hours=24)

BackupContents = dict[str, list[Document]]


@dataclass(frozen=True)
class BackupRecord:
    """
    Manifest of one backup.

    Attributes:
        backup_id: Unique backup identifier
        environment: Environment selector the backup was taken from
        database_id: Database the documents were read from
        created_at: When the export finished
        collections: Exported collection names
        document_counts: Documents exported per collection
        checksum: SHA-256 over the canonical JSON of the contents
        verified: True once the contents were re-read and matched
    """

    backup_id: str
    environment: str
    database_id: str
    created_at: datetime
    collections: tuple[str, ...]
    document_counts: Mapping[str, int] = field(default_factory=dict)
    checksum: str = ""
    verified: bool = False

    def covers(self, collections: Iterable[str]) -> bool:
        return set(collections) <= set(self.collections)

    def within_window(self, window: timedelta, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) - self.created_at <= window

    @property
    def total_documents(self) -> int:
        return sum(self.document_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "backupId": self.backup_id,
            "environment": self.environment,
            "databaseId": self.database_id,
            "createdAt": self.created_at.isoformat(),
            "collections": list(self.collections),
            "documentCounts": dict(self.document_counts),
            "checksum": self.checksum,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupRecord:
        return cls(
            backup_id=data["backupId"],
            environment=data["environment"],
            database_id=data["databaseId"],
            created_at=datetime.fromisoformat(data["createdAt"]),
            collections=tuple(data["collections"]),
            document_counts=dict(data.get("documentCounts", {})),
            checksum=data.get("checksum", ""),
            verified=bool(data.get("verified", False)),
        )


def compute_checksum(contents: Mapping[str, Sequence[Document]]) -> str:
    """SHA-256 over the canonical JSON of every collection, ordered by id."""
    digest = hashlib.sha256()
    for collection in sorted(contents):
        digest.update(collection.encode())
        for document in sorted(contents[collection], key=lambda d: d.id):
            digest.update(document.id.encode())
            digest.update(
                json.dumps(document.data, sort_keys=True, separators=(",", ":")).encode()
            )
    return digest.hexdigest()


class BackupStore(ABC):
    """
    Abstract base class for backup stores.

    Example:
        >>> record = await backups.create_backup(store, ["trades"], environment="staging")
        >>> record.verified
        True
        >>> await backups.latest_verified(["trades"])
    """

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @abstractmethod
    async def _write(self, record: BackupRecord, contents: BackupContents) -> None:
        pass

    @abstractmethod
    async def _write_record(self, record: BackupRecord) -> None:
        pass

    @abstractmethod
    async def load(self, backup_id: str) -> BackupContents:
        """
        Read a backup's documents.

        Raises:
            KeyError: If the backup does not exist
        """
        pass

    @abstractmethod
    async def list_backups(self) -> list[BackupRecord]:
        """All backups, newest first."""
        pass

    async def get_record(self, backup_id: str) -> BackupRecord | None:
        for record in await self.list_backups():
            if record.backup_id == backup_id:
                return record
        return None

    async def create_backup(
        self,
        store: DocumentStore,
        collections: Sequence[str],
        *,
        environment: str,
        verify: bool = True,
    ) -> BackupRecord:
        """
        Export collections from a store and (by default) verify the export.

        Raises:
            ValueError: If no collections are given
            BackupIntegrityError: If verification fails
        """
        if not collections:
            raise ValueError("At least one collection is required for a backup")
        backup_id = f"{datetime.now(UTC):%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:8]}"
        with self._tracer.span(
            "docshift.backup.create",
            {ATTR_BACKUP_ID: backup_id, ATTR_ENVIRONMENT: environment},
        ):
            contents: BackupContents = {}
            for collection in collections:
                contents[collection] = await store.iter_documents(collection)
            record = BackupRecord(
                backup_id=backup_id,
                environment=environment,
                database_id=store.database_id,
                created_at=datetime.now(UTC),
                collections=tuple(collections),
                document_counts={name: len(docs) for name, docs in contents.items()},
                checksum=compute_checksum(contents),
            )
            await self._write(record, contents)
            logger.info(
                "Created backup %s of %s (%d documents)",
                backup_id,
                ", ".join(collections),
                record.total_documents,
            )
        if verify:
            record = await self.verify(backup_id)
        return record

    async def verify(self, backup_id: str) -> BackupRecord:
        """
        Re-read a backup, check counts and checksum, and mark it verified.

        Raises:
            KeyError: If the backup does not exist
            BackupIntegrityError: If counts or checksum do not match
        """
        record = await self.get_record(backup_id)
        if record is None:
            raise KeyError(backup_id)
        with self._tracer.span(
            "docshift.backup.verify",
            {ATTR_BACKUP_ID: backup_id, ATTR_DOCUMENT_COUNT: record.total_documents},
        ):
            contents = await self.load(backup_id)
            counts = {name: len(docs) for name, docs in contents.items()}
            if counts != dict(record.document_counts):
                raise BackupIntegrityError(
                    f"Backup {backup_id} document counts {counts} do not match "
                    f"manifest {dict(record.document_counts)}"
                )
            if compute_checksum(contents) != record.checksum:
                raise BackupIntegrityError(f"Backup {backup_id} checksum mismatch")
            verified = replace(record, verified=True)
            await self._write_record(verified)
        logger.info("Verified backup %s", backup_id)
        return verified

    async def latest_verified(
        self,
        collections: Iterable[str],
        *,
        window: timedelta = DEFAULT_ROLLBACK_WINDOW,
        environment: str | None = None,
        now: datetime | None = None,
    ) -> BackupRecord | None:
        """Most recent verified backup covering every collection inside the window."""
        wanted = list(collections)
        for record in await self.list_backups():
            if not record.verified or not record.covers(wanted):
                continue
            if environment is not None and record.environment != environment:
                continue
            if record.within_window(window, now):
                return record
        return None


class InMemoryBackupStore(BackupStore):
    """In-memory backup store for testing."""

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        super().__init__(tracer, enable_tracing)
        self._records: dict[str, BackupRecord] = {}
        self._contents: dict[str, BackupContents] = {}
        self._lock = asyncio.Lock()

    async def _write(self, record: BackupRecord, contents: BackupContents) -> None:
        async with self._lock:
            self._records[record.backup_id] = record
            self._contents[record.backup_id] = copy.deepcopy(contents)

    async def _write_record(self, record: BackupRecord) -> None:
        async with self._lock:
            self._records[record.backup_id] = record

    async def load(self, backup_id: str) -> BackupContents:
        async with self._lock:
            return copy.deepcopy(self._contents[backup_id])

    async def list_backups(self) -> list[BackupRecord]:
        async with self._lock:
            return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)

    def add_record(self, record: BackupRecord, contents: BackupContents | None = None) -> None:
        """Register a backup directly (test helper)."""
        self._records[record.backup_id] = record
        self._contents[record.backup_id] = copy.deepcopy(contents or {})

    def corrupt(self, backup_id: str, collection: str) -> None:
        """Drop the last document of a collection (test helper)."""
        documents = self._contents[backup_id][collection]
        if documents:
            documents.pop()


class FileBackupStore(BackupStore):
    """
    Backup store writing JSON files under a directory.

    Layout::

        <directory>/<backup_id>/manifest.json
        <directory>/<backup_id>/<collection>.json

    File I/O runs in a worker thread.
    """

    MANIFEST = "manifest.json"

    def __init__(
        self,
        directory: str | Path,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(tracer, enable_tracing)
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _write_sync(self, record: BackupRecord, contents: BackupContents) -> None:
        backup_dir = self._directory / record.backup_id
        backup_dir.mkdir(parents=True, exist_ok=True)
        for collection, documents in contents.items():
            payload = [{"id": d.id, "data": dict(d.data)} for d in documents]
            (backup_dir / f"{collection}.json").write_text(json.dumps(payload, indent=2))
        self._write_record_sync(record)

    def _write_record_sync(self, record: BackupRecord) -> None:
        backup_dir = self._directory / record.backup_id
        backup_dir.mkdir(parents=True, exist_ok=True)
        (backup_dir / self.MANIFEST).write_text(json.dumps(record.to_dict(), indent=2))

    def _load_sync(self, backup_id: str) -> BackupContents:
        backup_dir = self._directory / backup_id
        manifest_path = backup_dir / self.MANIFEST
        if not manifest_path.exists():
            raise KeyError(backup_id)
        record = BackupRecord.from_dict(json.loads(manifest_path.read_text()))
        contents: BackupContents = {}
        for collection in record.collections:
            path = backup_dir / f"{collection}.json"
            if not path.exists():
                raise BackupIntegrityError(f"Backup {backup_id} is missing {path.name}")
            contents[collection] = [
                Document(item["id"], item["data"]) for item in json.loads(path.read_text())
            ]
        return contents

    def _list_sync(self) -> list[BackupRecord]:
        if not self._directory.exists():
            return []
        records = []
        for manifest_path in self._directory.glob(f"*/{self.MANIFEST}"):
            try:
                records.append(BackupRecord.from_dict(json.loads(manifest_path.read_text())))
            except (KeyError, ValueError) as e:
                logger.warning("Ignoring unreadable backup manifest %s: %s", manifest_path, e)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def _write(self, record: BackupRecord, contents: BackupContents) -> None:
        await asyncio.to_thread(self._write_sync, record, contents)

    async def _write_record(self, record: BackupRecord) -> None:
        await asyncio.to_thread(self._write_record_sync, record)

    async def load(self, backup_id: str) -> BackupContents:
        return await asyncio.to_thread(self._load_sync, backup_id)

    async def list_backups(self) -> list[BackupRecord]:
        return await asyncio.to_thread(self._list_sync)


__all__ = [
    "DEFAULT_ROLLBACK_WINDOW",
    "BackupContents",
    "BackupRecord",
    "BackupStore",
    "FileBackupStore",
    "InMemoryBackupStore",
    "compute_checksum",
]
