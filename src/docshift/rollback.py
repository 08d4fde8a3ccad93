"""
Rollback manager.

Reverts a migration by restoring the affected collections from the most
recent verified backup inside the rollback window. The manager is the only
writer allowed to leave ROLLING_BACK: it takes the registry's rollback lease
first and releases it only after every collection has been restored.

When no usable backup exists the registry is deliberately left in
ROLLING_BACK so that no new migration can start until an operator restores
the data by hand.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from docshift.compat.base import CompatibilityLayer
from docshift.exceptions import NoBackupAvailableError
from docshift.models import MigrationMode
from docshift.observability import (
    ATTR_BACKUP_ID,
    ATTR_COLLECTION,
    ATTR_DOCUMENT_COUNT,
    ATTR_ROLLBACK_REASON,
    Tracer,
    create_tracer,
)
from docshift.registry import MigrationRegistry, RollbackLease
from docshift.repositories.backups import DEFAULT_ROLLBACK_WINDOW, BackupStore
from docshift.retry import RetryConfig, RetryPolicy
from docshift.stores.interface import Document, DocumentStore

logger = logging.getLogger(__name__)

FIELD_ROLLED_BACK_AT = "rolledBackAt"
FIELD_ROLLBACK_REASON = "rollbackReason"


@dataclass(frozen=True)
class RollbackResult:
    """
    Outcome of a completed rollback.

    Attributes:
        reason: Operator-supplied reason
        backup_id: Backup the collections were restored from
        collections: Restored collections
        restored_counts: Documents written back per collection
        layers_reverted: Entity types switched to legacy-only
        previous_mode: Registry mode before the rollback started
        started_at: When the lease was taken
        finished_at: When the lease was released
    """

    reason: str
    backup_id: str
    collections: tuple[str, ...]
    restored_counts: Mapping[str, int] = field(default_factory=dict)
    layers_reverted: tuple[str, ...] = ()
    previous_mode: MigrationMode = MigrationMode.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def total_restored(self) -> int:
        return sum(self.restored_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "backup_id": self.backup_id,
            "collections": list(self.collections),
            "restored_counts": dict(self.restored_counts),
            "layers_reverted": list(self.layers_reverted),
            "previous_mode": self.previous_mode.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class RollbackManager:
    """
    Restores legacy state after a failed or abandoned migration.

    Example:
        >>> manager = RollbackManager(registry, store, backups, layers.values())
        >>> result = await manager.rollback("post-migration latency regression")
        >>> registry.mode
        <MigrationMode.IDLE: 'idle'>
    """

    def __init__(
        self,
        registry: MigrationRegistry,
        store: DocumentStore,
        backups: BackupStore,
        layers: Iterable[CompatibilityLayer] = (),
        *,
        rollback_window: timedelta = DEFAULT_ROLLBACK_WINDOW,
        environment: str | None = None,
        retry: RetryConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            registry: Registry whose rollback lease is taken
            store: Store the collections are restored into
            backups: Where verified backups are looked up
            layers: Compatibility layers to revert to legacy-only
            rollback_window: How old a backup may be (default 24 hours)
            environment: Only consider backups taken from this environment
            retry: Retry configuration for collection writes
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._registry = registry
        self._store = store
        self._backups = backups
        self._layers = list(layers)
        self._window = rollback_window
        self._environment = environment
        self._retry = RetryPolicy(retry)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def rollback_window(self) -> timedelta:
        return self._window

    def _default_collections(self) -> list[str]:
        return list(dict.fromkeys(layer.collection for layer in self._layers))

    async def _take_lease(self, reason: str) -> RollbackLease:
        if self._registry.mode is MigrationMode.ROLLING_BACK:
            return await self._registry.resume_rollback(reason)
        return await self._registry.enter_rollback(reason)

    async def rollback(
        self, reason: str, collections: Sequence[str] | None = None
    ) -> RollbackResult:
        """
        Roll back the affected collections and return the registry to IDLE.

        Args:
            reason: Why the rollback is happening (persisted with the mode)
            collections: Collections to restore; defaults to every layer's collection

        Returns:
            RollbackResult describing what was restored

        Raises:
            ValueError: If there is nothing to restore
            NoBackupAvailableError: If no verified backup exists inside the window;
                the registry stays in ROLLING_BACK
        """
        targets = list(collections) if collections else self._default_collections()
        if not targets:
            raise ValueError("No collections to roll back")

        previous_mode = self._registry.mode
        started_at = datetime.now(UTC)

        with self._tracer.span("docshift.rollback.rollback", {ATTR_ROLLBACK_REASON: reason}):
            lease = await self._take_lease(reason)
            logger.warning(
                "Rolling back %s from mode %s: %s",
                ", ".join(targets),
                previous_mode.value,
                reason,
            )

            # The registry broadcast already reverted registered layers; layers
            # handed in without being registered are reverted here.
            for layer in self._layers:
                layer.revert_to_legacy()

            record = await self._backups.latest_verified(
                targets, window=self._window, environment=self._environment
            )
            if record is None:
                logger.critical(
                    "No verified backup of %s within %s; registry left in %s",
                    ", ".join(targets),
                    self._window,
                    MigrationMode.ROLLING_BACK.value,
                )
                raise NoBackupAvailableError(
                    f"No verified backup of {', '.join(targets)} within the last "
                    f"{self._window.total_seconds() / 3600:g}h"
                )

            contents = await self._backups.load(record.backup_id)
            restored: dict[str, int] = {}
            for collection in targets:
                documents = self._stamp(contents.get(collection, []), reason, started_at)
                with self._tracer.span(
                    "docshift.rollback.restore_collection",
                    {
                        ATTR_BACKUP_ID: record.backup_id,
                        ATTR_COLLECTION: collection,
                        ATTR_DOCUMENT_COUNT: len(documents),
                    },
                ):
                    await self._retry.run(
                        lambda c=collection, d=documents: self._store.replace_collection(c, d),
                        f"restore_{collection}",
                    )
                restored[collection] = len(documents)
                logger.info(
                    "Restored %d document(s) into %s from backup %s",
                    len(documents),
                    collection,
                    record.backup_id,
                )

            await self._registry.finish_rollback(lease)

        result = RollbackResult(
            reason=reason,
            backup_id=record.backup_id,
            collections=tuple(targets),
            restored_counts=restored,
            layers_reverted=tuple(layer.entity_type for layer in self._layers),
            previous_mode=previous_mode,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )
        logger.info(
            "Rollback complete: %d document(s) restored from %s",
            result.total_restored,
            record.backup_id,
        )
        return result

    @staticmethod
    def _stamp(documents: Sequence[Document], reason: str, when: datetime) -> list[Document]:
        stamped = []
        for document in documents:
            data = document.copy_data()
            data[FIELD_ROLLED_BACK_AT] = when.isoformat()
            data[FIELD_ROLLBACK_REASON] = reason
            stamped.append(Document(document.id, data))
        return stamped


__all__ = [
    "FIELD_ROLLBACK_REASON",
    "FIELD_ROLLED_BACK_AT",
    "RollbackManager",
    "RollbackResult",
]
