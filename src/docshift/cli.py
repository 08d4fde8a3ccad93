"""Operator command line for docshift.

Usage:
    docshift init staging                        # Create and tag the staging database
    docshift backup create staging               # Verified JSON export of every collection
    docshift indexes verify staging indexes.json # Compare declared vs deployed indexes
    docshift indexes deploy --staging staging --production production indexes.json
    docshift migrate dry-run staging             # Transform + validate, never write
    docshift migrate validate-only staging       # Same, but safety checks gate the run
    docshift migrate execute production          # Migrate for real
    docshift migrate execute production --phases 10,50,100  # Percentage rollout
    docshift migrate status production           # Registry snapshot
    docshift migrate finish production           # Retire the compatibility layer
    docshift migrate rollback production         # Restore from the latest verified backup

Every command resolves its ENVIRONMENT through the project mapping file
(``.docshiftrc`` by default). Commands exit non-zero whenever a check,
deployment, document or rollback failed.
SIGINT and SIGTERM stop a running migration after its in-flight pages; the
registry stays in migrating and rerunning ``execute`` resumes it.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from docshift.compat import create_layers
from docshift.compat.base import CompatibilityLayer
from docshift.config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_DATA_DIR,
    EnvironmentProfile,
    ResolvedEnvironment,
    load_project_mapping,
)
from docshift.coordinator import MigrationCoordinator, MigrationRunReport, PhasedRollout
from docshift.exceptions import ConfigurationError, DocshiftError, SafetyCheckFailure
from docshift.executor import BatchMigrationExecutor, MigrationResult
from docshift.indexes.admin import SQLiteIndexAdmin
from docshift.indexes.comparator import IndexComparisonResult, compare_indexes
from docshift.indexes.definitions import IndexDefinition, load_index_definitions
from docshift.indexes.pipeline import DeploymentStage, IndexDeploymentPipeline, PipelineConfig
from docshift.indexes.readiness import IndexReadinessTracker
from docshift.models import ExecutionMode
from docshift.performance import PerformanceRegressionValidator, default_benchmarks
from docshift.registry import MigrationRegistry
from docshift.repositories.backups import FileBackupStore
from docshift.repositories.control_plane import SQLiteControlPlaneRepository
from docshift.rollback import RollbackManager
from docshift.safety import SafetyCheckConfig, SafetyCheckEngine, SafetyCheckReport
from docshift.stores.sqlite import SQLiteDocumentStore

logger = logging.getLogger(__name__)

DEFAULT_INDEX_FILE = Path("indexes.json")
DEFAULT_BACKUP_DIR = DEFAULT_DATA_DIR / "backups"
MAX_ERRORS_SHOWN = 10
STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)

console = Console()

app = typer.Typer(
    name="docshift",
    help="Zero-downtime schema migrations for document databases",
    no_args_is_help=True,
)
indexes_app = typer.Typer(
    name="indexes", help="Verify and deploy index definitions", no_args_is_help=True
)
migrate_app = typer.Typer(
    name="migrate", help="Run, inspect and roll back migrations", no_args_is_help=True
)
backup_app = typer.Typer(
    name="backup", help="Create and list verified backups", no_args_is_help=True
)
app.add_typer(indexes_app)
app.add_typer(migrate_app)
app.add_typer(backup_app)


@dataclass
class CliState:
    config_file: Path
    backup_dir: Path

    def resolve(self, environment: str) -> ResolvedEnvironment:
        return load_project_mapping(self.config_file).resolve(environment)


@dataclass
class Runtime:
    """Collaborators wired against one environment's database."""

    resolved: ResolvedEnvironment
    store: SQLiteDocumentStore
    registry: MigrationRegistry
    layers: dict[str, CompatibilityLayer]
    index_admin: SQLiteIndexAdmin
    backups: FileBackupStore
    readiness: IndexReadinessTracker


@asynccontextmanager
async def open_runtime(
    resolved: ResolvedEnvironment,
    backup_dir: Path,
    *,
    entity_types: Sequence[str] | None = None,
    create: bool = False,
) -> AsyncIterator[Runtime]:
    """
    Open the environment's store and wire registry, layers, admin and backups.

    Raises:
        ConfigurationError: If the database does not exist and ``create`` is False
    """
    path = Path(resolved.database)
    if resolved.database != ":memory:":
        if not path.exists() and not create:
            raise ConfigurationError(
                f"Database {path} for environment '{resolved.environment}' does not exist",
                suggested_action=f"Run 'docshift init {resolved.environment}' first",
            )
        path.parent.mkdir(parents=True, exist_ok=True)

    store = SQLiteDocumentStore(
        resolved.database, database_id=resolved.project_id if create else None
    )
    async with store:
        await store.initialize()
        registry = MigrationRegistry(SQLiteControlPlaneRepository(store.connection))
        await registry.load()
        readiness = IndexReadinessTracker()
        layers = create_layers(
            registry,
            store,
            entity_types=list(entity_types) if entity_types else None,
            readiness=readiness,
        )
        yield Runtime(
            resolved=resolved,
            store=store,
            registry=registry,
            layers=layers,
            index_admin=SQLiteIndexAdmin(store),
            backups=FileBackupStore(backup_dir / resolved.environment),
            readiness=readiness,
        )


def _state(ctx: typer.Context) -> CliState:
    state: CliState = ctx.obj
    return state


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def _collections(layers: dict[str, CompatibilityLayer]) -> list[str]:
    return list(dict.fromkeys(layer.collection for layer in layers.values()))


# =============================================================================
# Output
# =============================================================================


def _print_comparison(title: str, comparison: IndexComparisonResult) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Status")
    table.add_column("Collection")
    table.add_column("Index")
    for definition in comparison.present:
        table.add_row("[green]present[/green]", definition.collection_group, definition.describe())
    for definition in comparison.building:
        table.add_row(
            "[yellow]building[/yellow]", definition.collection_group, definition.describe()
        )
    for definition in comparison.missing:
        table.add_row("[red]missing[/red]", definition.collection_group, definition.describe())
    for deployed in comparison.unexpected:
        table.add_row(
            "[cyan]unexpected[/cyan]", deployed.definition.collection_group, deployed.name
        )
    console.print(table)


def _print_safety(report: SafetyCheckReport) -> None:
    table = Table(title="Safety checks", show_header=True, header_style="bold magenta")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")
    colors = {"passed": "green", "warning": "yellow", "skipped": "yellow", "failed": "red"}
    for outcome in report.checks:
        color = colors[outcome.status.value]
        details = "\n".join([*outcome.errors, *outcome.warnings])
        table.add_row(outcome.check.value, f"[{color}]{outcome.status.value}[/{color}]", details)
    console.print(table)


def _print_results(results: Sequence[MigrationResult]) -> None:
    table = Table(title="Migration results", show_header=True, header_style="bold magenta")
    for column in ("Entity", "Mode", "Total", "Migrated", "Failed", "Skipped", "Pages", "Seconds"):
        table.add_column(column)
    for result in results:
        table.add_row(
            result.entity_type,
            result.mode.value,
            str(result.total),
            str(result.migrated),
            f"[red]{result.failed}[/red]" if result.failed else "0",
            str(result.skipped),
            str(result.pages),
            f"{result.performance.duration_seconds:.1f}",
        )
    console.print(table)

    errors = [(r.entity_type, e) for r in results for e in r.errors]
    for entity_type, error in errors[:MAX_ERRORS_SHOWN]:
        console.print(f"  [red]x[/red] {entity_type}/{error.document_id}: {error.error}")
    if len(errors) > MAX_ERRORS_SHOWN:
        console.print(f"  ... and {len(errors) - MAX_ERRORS_SHOWN} more error(s)")
    for result in results:
        if result.cancelled:
            console.print(
                f"[yellow]{result.entity_type} stopped early; resume with "
                f"--start-after {result.last_cursor}[/yellow]"
            )


def _print_run(report: MigrationRunReport) -> None:
    if report.resumed:
        console.print("[yellow]Resumed a run left in migrating[/yellow]")
    _print_results(report.results)
    for outcome in report.phases:
        color = "green" if outcome.healthy else "red"
        console.print(
            f"Phase {outcome.phase.name} ({outcome.phase.percentage:g}%) "
            f"{outcome.entity_type}: {outcome.result.total} processed, "
            f"[{color}]error rate {outcome.error_rate:.1%}[/{color}] "
            f"(max {outcome.phase.max_error_rate:.1%})"
        )
    if report.verdict is not None:
        verdict = report.verdict
        console.print(
            f"Performance: {verdict.status.value} "
            f"(query {verdict.query_time_delta_percent:+.1f}%, "
            f"latency {verdict.latency_delta_percent:+.1f}%, "
            f"tolerance {verdict.threshold_percent:g}%)"
        )
    if report.regression is not None:
        console.print(f"[yellow]Warning:[/yellow] {report.regression.message}")
    if report.rollback is not None:
        console.print(
            f"[yellow]Rolled back[/yellow] {', '.join(report.rollback.collections)} "
            f"from backup {report.rollback.backup_id}"
        )
    if report.aborted_reason:
        console.print(f"[red]Aborted:[/red] {report.aborted_reason}")
    console.print(f"Registry mode: {report.final_mode.value}")


# =============================================================================
# Top level
# =============================================================================


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILE), "--config", "-c", help="Project mapping file"
    ),
    backup_dir: Path = typer.Option(
        DEFAULT_BACKUP_DIR, "--backup-dir", "-b", help="Directory holding backups"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Zero-downtime schema migrations for document databases."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    ctx.obj = CliState(config_file=config_file, backup_dir=backup_dir)


@app.command("init")
def init_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
) -> None:
    """Create an environment's database and record its identity."""
    state = _state(ctx)

    async def _init() -> str:
        resolved = state.resolve(environment)
        async with open_runtime(resolved, state.backup_dir, create=True) as runtime:
            return runtime.store.database_id

    try:
        database_id = asyncio.run(_init())
    except DocshiftError as e:
        raise _fail(str(e)) from e
    console.print(f"Initialized database [bold]{database_id}[/bold] for {environment}")


# =============================================================================
# Indexes
# =============================================================================


@indexes_app.command("verify")
def verify_indexes_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
    config_file: Path = typer.Argument(DEFAULT_INDEX_FILE, help="Index configuration file"),
) -> None:
    """Compare declared indexes against the environment's deployed indexes."""
    state = _state(ctx)

    async def _verify() -> IndexComparisonResult:
        expected = load_index_definitions(config_file)
        resolved = state.resolve(environment)
        async with open_runtime(resolved, state.backup_dir) as runtime:
            return compare_indexes(expected, await runtime.index_admin.list_indexes())

    try:
        comparison = asyncio.run(_verify())
    except DocshiftError as e:
        raise _fail(str(e)) from e

    _print_comparison(f"Indexes on {environment}", comparison)
    if not comparison.all_present:
        console.print(
            f"[red]{len(comparison.missing)} missing, {len(comparison.building)} building[/red]"
        )
        raise typer.Exit(1)
    console.print(f"[green]All {comparison.expected_count} indexes present[/green]")


@indexes_app.command("deploy")
def deploy_indexes_command(
    ctx: typer.Context,
    config_file: Path = typer.Argument(DEFAULT_INDEX_FILE, help="Index configuration file"),
    staging: str | None = typer.Option(None, "--staging", help="Staging environment selector"),
    production: str = typer.Option(
        "production", "--production", help="Production environment selector"
    ),
    poll_interval: float = typer.Option(30.0, "--poll-interval", help="Seconds between polls"),
    max_wait: float = typer.Option(3600.0, "--max-wait", help="Maximum wait per stage"),
) -> None:
    """Deploy indexes to staging, verify, then production."""
    state = _state(ctx)

    async def _deploy() -> bool:
        expected = load_index_definitions(config_file)
        config = PipelineConfig(poll_interval_seconds=poll_interval, max_wait_seconds=max_wait)
        production_env = state.resolve(production)
        async with open_runtime(production_env, state.backup_dir) as prod:
            if staging is None:
                pipeline = IndexDeploymentPipeline(
                    expected,
                    production=DeploymentStage(production, prod.index_admin, production=True),
                    config=config,
                )
                report = await pipeline.run()
            else:
                async with open_runtime(state.resolve(staging), state.backup_dir) as stage:
                    pipeline = IndexDeploymentPipeline(
                        expected,
                        staging=DeploymentStage(staging, stage.index_admin),
                        production=DeploymentStage(production, prod.index_admin, production=True),
                        config=config,
                    )
                    report = await pipeline.run()

        for name, comparison in report.comparisons.items():
            _print_comparison(f"Indexes on {name}", comparison)
        console.print(f"Deployment state: [bold]{report.state.value}[/bold]")
        if report.error is not None:
            console.print(f"[red]Error:[/red] {report.error}")
        return report.succeeded

    try:
        succeeded = asyncio.run(_deploy())
    except DocshiftError as e:
        raise _fail(str(e)) from e
    if not succeeded:
        raise typer.Exit(1)


# =============================================================================
# Migrations
# =============================================================================


def _expected_indexes(index_file: Path | None) -> list[IndexDefinition]:
    if index_file is not None:
        return load_index_definitions(index_file)
    if DEFAULT_INDEX_FILE.exists():
        return load_index_definitions(DEFAULT_INDEX_FILE)
    return []


@contextmanager
def stop_on_signals(on_stop: Callable[[], None]) -> Iterator[None]:
    """
    Route SIGINT and SIGTERM to ``on_stop`` while the block runs.

    Must be entered inside a running event loop. The migration then ends
    after its in-flight pages and reports a cursor to resume from, instead
    of dying mid-batch.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.warning("%s received; emergency stop requested", sig.name)
        console.print(f"[yellow]{sig.name} received; stopping after in-flight pages[/yellow]")
        on_stop()

    installed: list[signal.Signals] = []
    for sig in STOP_SIGNALS:
        try:
            loop.add_signal_handler(sig, _handle, sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Event loop cannot handle %s; emergency stop unavailable", sig.name)
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _parse_phases(phases: str | None, max_error_rate: float) -> PhasedRollout | None:
    if not phases:
        return None
    try:
        percentages = [float(part) for part in phases.split(",") if part.strip()]
        return PhasedRollout.from_percentages(percentages, max_error_rate=max_error_rate)
    except ValueError as e:
        raise typer.BadParameter(f"{phases!r}: {e}", param_hint="--phases") from e


def _run_migration(
    state: CliState,
    environment: str,
    mode: ExecutionMode,
    *,
    entity_types: list[str] | None,
    index_file: Path | None,
    skip_backup: bool,
    page_size: int | None,
    workers: int | None,
    start_after: str | None,
    rollback_on_failure: bool = False,
    rollout: PhasedRollout | None = None,
) -> None:
    async def _run() -> MigrationRunReport:
        resolved = state.resolve(environment)
        expected = _expected_indexes(index_file)
        async with open_runtime(
            resolved, state.backup_dir, entity_types=entity_types
        ) as runtime:
            layers = runtime.layers
            profile = EnvironmentProfile.for_environment(resolved)
            executor_config = profile.executor_config(
                mode, page_size=page_size, workers=workers, start_after=start_after
            )
            safety = SafetyCheckEngine(
                runtime.store,
                index_admin=runtime.index_admin,
                backups=runtime.backups,
                layers=layers.values(),
                expected_indexes=expected,
                readiness=runtime.readiness,
            )
            executor = BatchMigrationExecutor(runtime.store, layers, registry=runtime.registry)
            rollback = RollbackManager(
                runtime.registry,
                runtime.store,
                runtime.backups,
                layers.values(),
                environment=resolved.environment,
                retry=profile.retry,
            )
            performance = None
            if mode.writes:
                performance = PerformanceRegressionValidator(
                    runtime.store, default_benchmarks(layers.values()), registry=runtime.registry
                )
            coordinator = MigrationCoordinator(
                runtime.registry,
                executor,
                safety,
                layers=layers,
                performance=performance,
                rollback=rollback,
                rollout=rollout,
                rollback_on_failure=rollback_on_failure,
            )
            safety_config = SafetyCheckConfig(
                environment=resolved.environment,
                expected_database_id=resolved.project_id,
                is_production=resolved.is_production,
                skip_backup=skip_backup,
                collections=tuple(_collections(layers)),
            )
            with stop_on_signals(coordinator.cancel):
                report = await coordinator.run(list(layers), safety_config, executor_config)
            _print_safety(report.safety)
            return report

    try:
        report = asyncio.run(_run())
    except SafetyCheckFailure as e:
        _print_safety(e.report)
        raise _fail(f"{len(e.report.errors)} safety check error(s); nothing was written") from e
    except DocshiftError as e:
        raise _fail(str(e)) from e
    except ValueError as e:
        raise _fail(str(e)) from e

    _print_run(report)
    if not report.succeeded:
        console.print(f"[red]{report.total_failed} document(s) failed[/red]")
        raise typer.Exit(1)
    console.print(
        f"[green]{mode.value}: {report.total_migrated} document(s) "
        f"{'migrated' if mode.writes else 'validated'}[/green]"
    )


_ENTITY_HELP = "Entity type to migrate (repeatable; default all)"


@migrate_app.command("dry-run")
def dry_run_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
    entity: list[str] | None = typer.Option(None, "--entity", "-e", help=_ENTITY_HELP),
    index_file: Path | None = typer.Option(None, "--index-file", help="Index configuration file"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="Skip the backup check"),
    page_size: int | None = typer.Option(None, "--page-size", help="Documents per page"),
    workers: int | None = typer.Option(None, "--workers", help="Pages processed concurrently"),
    start_after: str | None = typer.Option(None, "--start-after", help="Resume cursor"),
) -> None:
    """Transform and validate every document without writing; checks are advisory."""
    _run_migration(
        _state(ctx),
        environment,
        ExecutionMode.DRY_RUN,
        entity_types=entity,
        index_file=index_file,
        skip_backup=skip_backup,
        page_size=page_size,
        workers=workers,
        start_after=start_after,
    )


@migrate_app.command("validate-only")
def validate_only_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
    entity: list[str] | None = typer.Option(None, "--entity", "-e", help=_ENTITY_HELP),
    index_file: Path | None = typer.Option(None, "--index-file", help="Index configuration file"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="Skip the backup check"),
    page_size: int | None = typer.Option(None, "--page-size", help="Documents per page"),
    workers: int | None = typer.Option(None, "--workers", help="Pages processed concurrently"),
) -> None:
    """Transform and validate every document without writing; checks must pass."""
    _run_migration(
        _state(ctx),
        environment,
        ExecutionMode.VALIDATE_ONLY,
        entity_types=entity,
        index_file=index_file,
        skip_backup=skip_backup,
        page_size=page_size,
        workers=workers,
        start_after=None,
    )


@migrate_app.command("execute")
def execute_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
    entity: list[str] | None = typer.Option(None, "--entity", "-e", help=_ENTITY_HELP),
    index_file: Path | None = typer.Option(None, "--index-file", help="Index configuration file"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="Skip the backup check"),
    page_size: int | None = typer.Option(None, "--page-size", help="Documents per page"),
    workers: int | None = typer.Option(None, "--workers", help="Pages processed concurrently"),
    start_after: str | None = typer.Option(None, "--start-after", help="Resume cursor"),
    rollback_on_failure: bool = typer.Option(
        False, "--rollback-on-failure", help="Roll back automatically if any document fails"
    ),
    phases: str | None = typer.Option(
        None,
        "--phases",
        help="Cumulative rollout percentages, e.g. 10,50,100 (default one pass)",
    ),
    max_error_rate: float = typer.Option(
        0.05, "--max-error-rate", help="Failed share of a phase that stops the rollout"
    ),
) -> None:
    """Migrate every document and write both shapes."""
    rollout = _parse_phases(phases, max_error_rate)
    _run_migration(
        _state(ctx),
        environment,
        ExecutionMode.EXECUTE,
        entity_types=entity,
        index_file=index_file,
        skip_backup=skip_backup,
        page_size=page_size,
        workers=workers,
        start_after=start_after,
        rollback_on_failure=rollback_on_failure,
        rollout=rollout,
    )


@migrate_app.command("rollback")
def rollback_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
    reason: str = typer.Option("operator requested rollback", "--reason", "-r"),
    collection: list[str] | None = typer.Option(
        None, "--collection", help="Collection to restore (repeatable; default all)"
    ),
) -> None:
    """Restore collections from the latest verified backup and return to idle."""
    state = _state(ctx)

    async def _rollback() -> None:
        resolved = state.resolve(environment)
        async with open_runtime(resolved, state.backup_dir) as runtime:
            manager = RollbackManager(
                runtime.registry,
                runtime.store,
                runtime.backups,
                runtime.layers.values(),
                environment=resolved.environment,
            )
            result = await manager.rollback(reason, collection or None)
        for name, count in result.restored_counts.items():
            console.print(f"Restored {count} document(s) into {name}")
        console.print(f"[green]Rolled back from backup {result.backup_id}[/green]")

    try:
        asyncio.run(_rollback())
    except DocshiftError as e:
        raise _fail(str(e)) from e


@migrate_app.command("status")
def status_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
) -> None:
    """Show the registry mode, reason, layers and baselines."""
    state = _state(ctx)

    async def _status() -> None:
        resolved = state.resolve(environment)
        async with open_runtime(resolved, state.backup_dir) as runtime:
            status = runtime.registry.status()
        table = Table(title=f"Migration status: {environment}", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Database", resolved.project_id)
        table.add_row("Mode", status.mode.value)
        table.add_row("Reason", status.reason or "-")
        table.add_row("Updated", status.updated_at.isoformat())
        table.add_row("Layers", ", ".join(status.observers) or "-")
        for label, baseline in (
            ("Pre baseline", status.pre_baseline),
            ("Post baseline", status.post_baseline),
        ):
            if baseline is None:
                table.add_row(label, "-")
            else:
                table.add_row(
                    label,
                    f"query {baseline.average_query_time_ms:.2f}ms, "
                    f"latency {baseline.real_time_latency_ms:.2f}ms",
                )
        console.print(table)

    try:
        asyncio.run(_status())
    except DocshiftError as e:
        raise _fail(str(e)) from e


@migrate_app.command("finish")
def finish_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
) -> None:
    """Leave COMPLETE and return the registry to idle."""
    state = _state(ctx)

    async def _finish() -> None:
        async with open_runtime(state.resolve(environment), state.backup_dir) as runtime:
            await runtime.registry.disable_migration_mode("migration finished by operator")

    try:
        asyncio.run(_finish())
    except DocshiftError as e:
        raise _fail(str(e)) from e
    console.print("[green]Migration finished; registry is idle[/green]")


# =============================================================================
# Backups
# =============================================================================


@backup_app.command("create")
def create_backup_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
    collection: list[str] | None = typer.Option(
        None, "--collection", help="Collection to export (repeatable; default all)"
    ),
) -> None:
    """Export collections to a verified JSON backup."""
    state = _state(ctx)

    async def _create() -> None:
        resolved = state.resolve(environment)
        async with open_runtime(resolved, state.backup_dir) as runtime:
            record = await runtime.backups.create_backup(
                runtime.store,
                collection or _collections(runtime.layers),
                environment=resolved.environment,
            )
        console.print(
            f"[green]Backup {record.backup_id}[/green]: {record.total_documents} document(s), "
            f"verified={record.verified}"
        )

    try:
        asyncio.run(_create())
    except DocshiftError as e:
        raise _fail(str(e)) from e


@backup_app.command("list")
def list_backups_command(
    ctx: typer.Context,
    environment: str = typer.Argument("default", help="Environment selector"),
) -> None:
    """List backups for an environment, newest first."""
    state = _state(ctx)
    try:
        resolved = state.resolve(environment)
    except DocshiftError as e:
        raise _fail(str(e)) from e
    records = asyncio.run(FileBackupStore(state.backup_dir / resolved.environment).list_backups())
    table = Table(title=f"Backups: {environment}", show_header=True, header_style="bold magenta")
    for column in ("Backup", "Created", "Collections", "Documents", "Verified"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.backup_id,
            record.created_at.isoformat(),
            ", ".join(record.collections),
            str(record.total_documents),
            "yes" if record.verified else "no",
        )
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
