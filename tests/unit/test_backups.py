"""
Unit tests for backup stores.

Tests cover:
- Creating and verifying backups (in-memory and file-based)
- Integrity failures on tampered backups
- latest_verified window, environment and coverage filtering
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from docshift.exceptions import BackupIntegrityError
from docshift.repositories.backups import (
    BackupRecord,
    FileBackupStore,
    InMemoryBackupStore,
    compute_checksum,
)
from docshift.stores.interface import Document


def record(
    backup_id: str,
    *,
    age: timedelta = timedelta(hours=1),
    environment: str = "staging",
    collections: tuple[str, ...] = ("trades",),
    verified: bool = True,
) -> BackupRecord:
    return BackupRecord(
        backup_id=backup_id,
        environment=environment,
        database_id="tradeya-staging",
        created_at=datetime.now(UTC) - age,
        collections=collections,
        verified=verified,
    )


class TestBackupRecord:
    """Tests for BackupRecord."""

    def test_dict_round_trip(self) -> None:
        original = record("b1", collections=("trades", "messages"))
        assert BackupRecord.from_dict(json.loads(json.dumps(original.to_dict()))) == original

    def test_covers(self) -> None:
        r = record("b1", collections=("trades", "messages"))
        assert r.covers(["trades"])
        assert not r.covers(["trades", "conversations"])

    def test_checksum_ignores_document_order(self) -> None:
        a = [Document("1", {"x": 1}), Document("2", {"x": 2})]
        assert compute_checksum({"trades": a}) == compute_checksum({"trades": a[::-1]})
        assert compute_checksum({"trades": a}) != compute_checksum({"trades": a[:1]})


class TestInMemoryBackupStore:
    """Tests for InMemoryBackupStore."""

    @pytest.mark.asyncio
    async def test_create_verifies_by_default(
        self, backups: InMemoryBackupStore, store: Any, seed_trades: Any
    ) -> None:
        await seed_trades(5)
        created = await backups.create_backup(store, ["trades"], environment="staging")

        assert created.verified
        assert created.document_counts == {"trades": 5}
        assert created.database_id == "tradeya-staging"
        contents = await backups.load(created.backup_id)
        assert [d.id for d in contents["trades"]] == [f"trade-{i:04d}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_requires_collections(self, backups: InMemoryBackupStore, store: Any) -> None:
        with pytest.raises(ValueError):
            await backups.create_backup(store, [], environment="staging")

    @pytest.mark.asyncio
    async def test_tampered_backup_fails_verification(
        self, backups: InMemoryBackupStore, store: Any, seed_trades: Any
    ) -> None:
        await seed_trades(3)
        created = await backups.create_backup(
            store, ["trades"], environment="staging", verify=False
        )
        backups.corrupt(created.backup_id, "trades")

        with pytest.raises(BackupIntegrityError, match="document counts"):
            await backups.verify(created.backup_id)
        assert await backups.latest_verified(["trades"]) is None

    @pytest.mark.asyncio
    async def test_verify_unknown_backup(self, backups: InMemoryBackupStore) -> None:
        with pytest.raises(KeyError):
            await backups.verify("missing")

    @pytest.mark.asyncio
    async def test_latest_verified_filters(self, backups: InMemoryBackupStore) -> None:
        backups.add_record(record("old", age=timedelta(hours=30)))
        backups.add_record(record("unverified", age=timedelta(minutes=1), verified=False))
        backups.add_record(record("prod", age=timedelta(minutes=2), environment="production"))
        backups.add_record(record("good", age=timedelta(hours=2)))

        latest = await backups.latest_verified(["trades"], environment="staging")
        assert latest is not None
        assert latest.backup_id == "good"

        assert await backups.latest_verified(["trades", "messages"]) is None
        assert (
            await backups.latest_verified(
                ["trades"], environment="staging", window=timedelta(hours=1)
            )
            is None
        )

    @pytest.mark.asyncio
    async def test_list_is_newest_first(self, backups: InMemoryBackupStore) -> None:
        backups.add_record(record("older", age=timedelta(hours=3)))
        backups.add_record(record("newer", age=timedelta(hours=1)))

        assert [r.backup_id for r in await backups.list_backups()] == ["newer", "older"]
        assert await backups.get_record("older") is not None
        assert await backups.get_record("missing") is None


class TestFileBackupStore:
    """Tests for FileBackupStore."""

    @pytest.mark.asyncio
    async def test_create_writes_manifest_and_collections(
        self, tmp_path: Path, store: Any, seed_trades: Any
    ) -> None:
        await seed_trades(4)
        await store.seed("messages", {"m-1": {"chatId": "c-1", "userId": "u", "message": "hi"}})
        backups = FileBackupStore(tmp_path / "backups", enable_tracing=False)

        created = await backups.create_backup(
            store, ["trades", "messages"], environment="staging"
        )

        backup_dir = tmp_path / "backups" / created.backup_id
        manifest = json.loads((backup_dir / "manifest.json").read_text())
        assert manifest["verified"] is True
        assert manifest["documentCounts"] == {"trades": 4, "messages": 1}
        assert (backup_dir / "trades.json").exists()
        assert (backup_dir / "messages.json").exists()

    @pytest.mark.asyncio
    async def test_records_survive_new_instance(
        self, tmp_path: Path, store: Any, seed_trades: Any
    ) -> None:
        await seed_trades(2)
        first = FileBackupStore(tmp_path, enable_tracing=False)
        created = await first.create_backup(store, ["trades"], environment="staging")

        second = FileBackupStore(tmp_path, enable_tracing=False)
        latest = await second.latest_verified(["trades"], environment="staging")
        assert latest == created
        contents = await second.load(created.backup_id)
        assert len(contents["trades"]) == 2

    @pytest.mark.asyncio
    async def test_edited_file_fails_verification(
        self, tmp_path: Path, store: Any, seed_trades: Any
    ) -> None:
        await seed_trades(2)
        backups = FileBackupStore(tmp_path, enable_tracing=False)
        created = await backups.create_backup(store, ["trades"], environment="staging")

        path = tmp_path / created.backup_id / "trades.json"
        payload = json.loads(path.read_text())
        payload[0]["data"]["title"] = "edited"
        path.write_text(json.dumps(payload))

        with pytest.raises(BackupIntegrityError, match="checksum"):
            await backups.verify(created.backup_id)

    @pytest.mark.asyncio
    async def test_missing_collection_file(
        self, tmp_path: Path, store: Any, seed_trades: Any
    ) -> None:
        await seed_trades(1)
        backups = FileBackupStore(tmp_path, enable_tracing=False)
        created = await backups.create_backup(store, ["trades"], environment="staging")
        (tmp_path / created.backup_id / "trades.json").unlink()

        with pytest.raises(BackupIntegrityError, match="missing trades.json"):
            await backups.load(created.backup_id)

    @pytest.mark.asyncio
    async def test_unreadable_manifest_is_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "manifest.json").write_text("{}")
        backups = FileBackupStore(tmp_path, enable_tracing=False)

        assert await backups.list_backups() == []

    @pytest.mark.asyncio
    async def test_missing_directory_lists_nothing(self, tmp_path: Path) -> None:
        backups = FileBackupStore(tmp_path / "nope", enable_tracing=False)
        assert await backups.list_backups() == []
