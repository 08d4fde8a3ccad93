"""
Basic Usage Example

This example walks through one migration of legacy trade documents:
- Reading legacy documents through a compatibility layer
- Taking a verified backup
- Running the coordinator (safety checks, batches, baselines)
- Rolling back from the backup

Everything runs against in-memory stores, so nothing is written to disk.

Run with: python examples/basic_usage.py
"""

import asyncio

from docshift import (
    BatchMigrationExecutor,
    ExecutionMode,
    ExecutorConfig,
    InMemoryDocumentStore,
    MigrationCoordinator,
    MigrationRegistry,
    PerformanceRegressionValidator,
    RollbackManager,
    SafetyCheckConfig,
    SafetyCheckEngine,
    create_layers,
)
from docshift.performance import default_benchmarks
from docshift.repositories.backups import InMemoryBackupStore

ENVIRONMENT = "staging"
DATABASE_ID = "tradeya-staging"


def legacy_trade(index: int) -> dict:
    return {
        "title": f"Trade #{index}",
        "status": "open",
        "offeredSkills": ["python"],
        "requestedSkills": [{"id": "design", "name": "Logo Design"}],
        "creatorId": f"user-{index % 3}",
        "participantId": "user-b",
        "createdAt": "2024-01-01T00:00:00+00:00",
    }


async def main() -> None:
    # =========================================================================
    # Step 1: Seed a store with legacy documents
    # =========================================================================
    store = InMemoryDocumentStore(DATABASE_ID)
    await store.seed("trades", {f"trade-{i:03d}": legacy_trade(i) for i in range(10)})

    registry = MigrationRegistry()
    layers = create_layers(registry, store)
    trades = layers["trades"]

    print("=== Before migration ===")
    print(f"Registry mode: {registry.mode.value}")
    entity = await trades.get("trade-001")
    assert entity is not None
    print(f"trade-001 read as {entity.shape.value}: {entity.values['participants.creator']}")
    matches = await trades.query("by_creator", "user-1")
    print(f"Trades created by user-1: {sorted(e.id for e in matches)}")

    # =========================================================================
    # Step 2: Take a verified backup
    # =========================================================================
    backups = InMemoryBackupStore()
    record = await backups.create_backup(
        store, ["trades", "conversations", "messages"], environment=ENVIRONMENT
    )
    print(f"\nBackup {record.backup_id}: {record.total_documents} documents")

    # =========================================================================
    # Step 3: Run the migration
    # =========================================================================
    coordinator = MigrationCoordinator(
        registry,
        BatchMigrationExecutor(store, layers, registry=registry),
        SafetyCheckEngine(store, backups=backups, layers=layers.values()),
        layers=layers,
        performance=PerformanceRegressionValidator(
            store, default_benchmarks(layers.values()), registry=registry
        ),
    )
    report = await coordinator.run(
        ["trades"],
        SafetyCheckConfig(environment=ENVIRONMENT, expected_database_id=DATABASE_ID),
        ExecutorConfig(mode=ExecutionMode.EXECUTE, page_size=4, inter_page_delay_seconds=0.0),
    )

    print("\n=== After migration ===")
    for result in report.results:
        print(f"{result.entity_type}: {result.migrated}/{result.total} in {result.pages} pages")
    if report.verdict is not None:
        print(f"Performance verdict: {report.verdict.status.value}")
    print(f"Registry mode: {report.final_mode.value}")

    document = await store.get("trades", "trade-001")
    assert document is not None
    print(f"trade-001 schemaVersion: {document.data['schemaVersion']}")
    print(f"trade-001 participants: {document.data['participants']}")

    # =========================================================================
    # Step 4: Roll back
    # =========================================================================
    rollback = RollbackManager(
        registry, store, backups, layers.values(), environment=ENVIRONMENT
    )
    rolled_back = await rollback.rollback("example rollback")

    print("\n=== After rollback ===")
    print(f"Restored: {rolled_back.restored_counts}")
    print(f"Registry mode: {registry.mode.value}")
    document = await store.get("trades", "trade-001")
    assert document is not None
    print(f"trade-001 has schemaVersion: {'schemaVersion' in document.data}")


if __name__ == "__main__":
    asyncio.run(main())
