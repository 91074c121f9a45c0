from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
import typer

from .catalog import SearchOptions, search_titles
from .config import Settings, load_settings
from .diagnostics import heal, run_diagnostics
from .export_parquet import MANIFEST_NAME, export_catalog_to_parquet
from .http_client import AniListClient
from .lists import (
    ListEntry,
    ListEntryError,
    add_to_list,
    get_user_lists,
    remove_from_list,
    status_counts,
    update_entry,
)
from .logs import configure_logging
from .models import SyncProgress, require_content_type
from .storage_sqlite import CatalogStorage, SyncInProgressError
from .sync import (
    SyncResult,
    process_dead_letters,
    sync_all,
    sync_catalog,
    sync_incremental,
    sync_vote_counts,
)


app = typer.Typer(help="Sync the AniList anime and manga catalog into SQLite", no_args_is_help=True)
lists_app = typer.Typer(help="Track personal anime and manga lists", no_args_is_help=True)
app.add_typer(lists_app, name="lists")
console = Console()


@dataclass(slots=True)
class _State:
    settings: Settings


def _make_client(settings: Settings) -> AniListClient:
    return AniListClient(settings)


def _settings(ctx: typer.Context) -> Settings:
    state = ctx.obj
    if not isinstance(state, _State):
        return Settings()
    return state.settings


def _open_storage(settings: Settings) -> CatalogStorage:
    storage = CatalogStorage(settings.db_path)
    storage.initialize()
    return storage


def _content_type(value: str) -> str:
    try:
        return require_content_type(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
    )


def _print_sync_result(result: SyncResult, telemetry=None) -> None:
    table = Table(title=f"Sync Summary: {result.job_name}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Run id", result.run_id)
    table.add_row("Status", result.status)
    table.add_row("Pages", str(result.progress.pages))
    table.add_row("Last page", str(result.last_page))
    table.add_row("Processed", str(result.progress.processed))
    table.add_row("Created", str(result.progress.created))
    table.add_row("Updated", str(result.progress.updated))
    table.add_row("Skipped", str(result.progress.skipped))
    table.add_row("Errors", str(result.progress.errors))
    table.add_row("Dead-lettered", str(result.progress.dead_lettered))
    table.add_row("Duration (s)", f"{result.duration_seconds:.1f}")
    table.add_row("Items/s", f"{result.items_per_second:.1f}")
    if telemetry is not None:
        table.add_row("Requests", str(telemetry.total_requests))
        table.add_row("Retries", str(telemetry.retries))
        table.add_row("429 responses", str(telemetry.rate_limited))
        table.add_row("Mean latency (ms)", f"{telemetry.mean_latency_ms:.1f}")
        table.add_row("Throttled (s)", f"{telemetry.throttled_seconds:.1f}")
    console.print(table)


def _run_single_sync(settings: Settings, description: str, runner) -> None:
    """Run ``runner(client, storage, callback)`` under a progress bar and print its summary."""

    storage = _open_storage(settings)
    progress = _progress()
    task = progress.add_task(description, total=1)

    def callback(sync_progress: SyncProgress, total: int) -> None:
        progress.update(
            task,
            description=(
                f"{description} [new={sync_progress.created} upd={sync_progress.updated} "
                f"err={sync_progress.errors}]"
            ),
            total=max(1, total),
            completed=min(sync_progress.pages, max(1, total)),
        )

    async def execute():
        async with _make_client(settings) as client:
            result = await runner(client, storage, callback)
            return result, getattr(client, "telemetry", None)

    try:
        with progress:
            result, telemetry = asyncio.run(execute())
    except SyncInProgressError as exc:
        console.print(f"[bold yellow]Skipped:[/bold yellow] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        storage.close()
    _print_sync_result(result, telemetry)


@app.callback()
def main(
    ctx: typer.Context,
    db: Path | None = typer.Option(None, "--db", dir_okay=False, help="SQLite catalog path"),
    config: Path | None = typer.Option(None, "--config", exists=True, dir_okay=False, help="TOML config"),
    log_level: str | None = typer.Option(None, "--log-level"),
) -> None:
    try:
        settings = load_settings(config)
    except RuntimeError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    if db is not None:
        settings = replace(settings, db_path=db.resolve())
    if log_level is not None:
        settings = replace(settings, log_level=log_level.upper())
    configure_logging(settings.log_level)
    ctx.obj = _State(settings=settings)


@app.command()
def sync(
    ctx: typer.Context,
    content_type: str = typer.Argument(..., help="anime or manga"),
    max_pages: int = typer.Option(10, min=1),
    concurrency: int | None = typer.Option(None, min=1),
    run_id: str | None = typer.Option(None, help="Resume a previous run from its checkpoint"),
) -> None:
    """Full catalog sync for one content type, most popular titles first."""

    settings = _settings(ctx)
    content_type = _content_type(content_type)

    async def runner(client, storage, callback):
        return await sync_catalog(
            client=client,
            storage=storage,
            content_type=content_type,
            max_pages=max_pages,
            concurrency=concurrency or settings.concurrency,
            per_page=settings.per_page,
            run_id=run_id,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            dlq_max_retries=settings.dlq_max_retries,
            callback=callback,
        )

    _run_single_sync(settings, f"Sync {content_type}", runner)


@app.command("sync-all")
def sync_all_command(
    ctx: typer.Context,
    max_pages: int = typer.Option(10, min=1),
    concurrency: int | None = typer.Option(None, min=1),
) -> None:
    """Sync anime then manga; a failure on one side does not stop the other."""

    settings = _settings(ctx)
    storage = _open_storage(settings)
    progress = _progress()
    tasks = {
        content_type: progress.add_task(f"Sync {content_type}", total=max(1, max_pages))
        for content_type in ("anime", "manga")
    }

    def callback(content_type: str, sync_progress: SyncProgress, total: int) -> None:
        progress.update(tasks[content_type], completed=min(sync_progress.pages, max(1, total)))

    async def execute():
        async with _make_client(settings) as client:
            return await sync_all(
                client=client,
                storage=storage,
                max_pages=max_pages,
                concurrency=concurrency or settings.concurrency,
                per_page=settings.per_page,
                lock_ttl_seconds=settings.lock_ttl_seconds,
                dlq_max_retries=settings.dlq_max_retries,
                callback=callback,
            )

    try:
        with progress:
            outcome = asyncio.run(execute())
    finally:
        storage.close()

    table = Table(title=f"Dual Sync: {outcome.status}")
    table.add_column("Content")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Errors", justify="right")
    for content_type, result in outcome.results.items():
        table.add_row(content_type, result.status, str(result.progress.processed), str(result.progress.errors))
    for content_type, message in outcome.failures.items():
        table.add_row(content_type, "failed", "-", message)
    console.print(table)
    if not outcome.results:
        raise typer.Exit(code=1)


@app.command()
def incremental(
    ctx: typer.Context,
    content_type: str = typer.Argument(..., help="anime or manga"),
    days_back: int = typer.Option(7, min=0),
    max_pages: int = typer.Option(5, min=1),
) -> None:
    """Upsert titles AniList changed in the last few days."""

    settings = _settings(ctx)
    content_type = _content_type(content_type)

    async def runner(client, storage, callback):
        return await sync_incremental(
            client=client,
            storage=storage,
            content_type=content_type,
            days_back=days_back,
            max_pages=max_pages,
            per_page=settings.per_page,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            dlq_max_retries=settings.dlq_max_retries,
            callback=callback,
        )

    _run_single_sync(settings, f"Incremental {content_type}", runner)


@app.command()
def votes(
    ctx: typer.Context,
    content_type: str = typer.Argument(..., help="anime or manga"),
    max_pages: int = typer.Option(5, min=1),
) -> None:
    """Refresh vote counts for titles already in the catalog."""

    settings = _settings(ctx)
    content_type = _content_type(content_type)

    async def runner(client, storage, callback):
        return await sync_vote_counts(
            client=client,
            storage=storage,
            content_type=content_type,
            max_pages=max_pages,
            per_page=settings.per_page,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            callback=callback,
        )

    _run_single_sync(settings, f"Votes {content_type}", runner)


@app.command()
def dlq(
    ctx: typer.Context,
    limit: int = typer.Option(50, min=1),
) -> None:
    """Retry due dead-letter items."""

    settings = _settings(ctx)
    storage = _open_storage(settings)

    async def execute():
        async with _make_client(settings) as client:
            return await process_dead_letters(client=client, storage=storage, limit=limit)

    try:
        result = asyncio.run(execute())
        counts = storage.dead_letter_counts()
    finally:
        storage.close()

    table = Table(title="Dead-Letter Queue")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Due items", str(result.found))
    table.add_row("Recovered", str(result.processed))
    table.add_row("Failed", str(result.failed))
    table.add_row("Exhausted", str(result.exhausted))
    table.add_row("Pending after run", str(counts["pending"]))
    table.add_row("Exhausted total", str(counts["exhausted"]))
    console.print(table)


@app.command()
def diagnose(
    ctx: typer.Context,
    check_api: bool = typer.Option(True, "--check-api/--offline"),
    fix: bool = typer.Option(False, "--heal", help="Delete orphan titles after diagnosing"),
) -> None:
    """Report catalog health, recent job failures and API reachability."""

    settings = _settings(ctx)
    storage = _open_storage(settings)

    async def execute():
        if not check_api:
            return await run_diagnostics(storage)
        async with _make_client(settings) as client:
            return await run_diagnostics(storage, client=client)

    try:
        report = asyncio.run(execute())
        actions = heal(storage) if fix else []
    finally:
        storage.close()

    table = Table(title="Catalog Diagnostics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in report.counts.items():
        table.add_row(key.replace("_", " ").capitalize(), str(value))
    table.add_row("DLQ pending", str(report.dead_letters["pending"]))
    table.add_row("DLQ exhausted", str(report.dead_letters["exhausted"]))
    table.add_row("Titles without genres", str(report.titles_without_genres))
    table.add_row("Orphan titles", str(report.orphan_titles))
    table.add_row("Recent job errors", str(report.recent_job_errors))
    table.add_row("Last job", report.last_job_at or "-")
    table.add_row("API", {True: "ok", False: "unreachable", None: "not checked"}[report.api_healthy])
    table.add_row("Active locks", ", ".join(report.active_locks) or "-")
    console.print(table)

    for issue in report.issues:
        console.print(f"[bold yellow]Issue:[/bold yellow] {issue}")
    for recommendation in report.recommendations:
        console.print(f"[bold]Recommendation:[/bold] {recommendation}")
    for action in actions:
        console.print(f"[bold green]Heal:[/bold green] {action}")


@app.command()
def jobs(
    ctx: typer.Context,
    limit: int = typer.Option(20, min=1),
    job_name: str | None = typer.Option(None, "--job"),
) -> None:
    """Show recent job log entries."""

    storage = _open_storage(_settings(ctx))
    try:
        rows = storage.recent_jobs(limit=limit, job_name=job_name)
    finally:
        storage.close()

    table = Table(title="Recent Jobs")
    table.add_column("Executed at")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Error")
    for row in rows:
        table.add_row(row["executed_at"], row["job_name"], row["status"], row["error_message"] or "")
    console.print(table)


@app.command()
def stats(
    ctx: typer.Context,
    run_id: str | None = typer.Option(None),
) -> None:
    """Print catalog counts and the stats of one sync run (latest by default)."""

    storage = _open_storage(_settings(ctx))
    try:
        counts = storage.catalog_counts()
        resolved_run_id = run_id or storage.latest_run_id()
        try:
            run = storage.get_run(resolved_run_id) if resolved_run_id else None
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--run-id") from exc
    finally:
        storage.close()

    table = Table(title="Catalog")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in counts.items():
        table.add_row(key.replace("_", " ").capitalize(), str(value))
    console.print(table)

    if run is None:
        console.print("No sync runs recorded yet.")
        return
    run_table = Table(title=f"Run Stats: {run.run_id}")
    run_table.add_column("Metric")
    run_table.add_column("Value", justify="right")
    run_table.add_row("Job", run.job_name)
    run_table.add_row("Status", run.status)
    run_table.add_row("Started", run.started_at)
    run_table.add_row("Finished", run.finished_at or "-")
    run_table.add_row("Pages", str(run.pages))
    run_table.add_row("Last page", str(run.last_page))
    run_table.add_row("Processed", str(run.processed))
    run_table.add_row("Created", str(run.created))
    run_table.add_row("Updated", str(run.updated))
    run_table.add_row("Errors", str(run.errors))
    run_table.add_row("Dead-lettered", str(run.dead_lettered))
    console.print(run_table)


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(...),
    content_type: str = typer.Option("both", "--type"),
    limit: int = typer.Option(20, min=1, max=100),
    genre: list[str] | None = typer.Option(None, "--genre"),
    year: int | None = typer.Option(None),
    status: str | None = typer.Option(None),
    sort_by: str = typer.Option("score"),
    ascending: bool = typer.Option(False, "--asc"),
) -> None:
    """Search the local catalog by title."""

    if content_type not in ("anime", "manga", "both"):
        raise typer.BadParameter("Must be anime, manga or both", param_hint="--type")
    options = SearchOptions(
        query=query,
        content_type=content_type,
        limit=limit,
        genres=list(genre or []),
        year=year,
        status=status,
        sort_by=sort_by,
        order="asc" if ascending else "desc",
    )
    storage = _open_storage(_settings(ctx))
    try:
        result = search_titles(storage, options)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--sort-by") from exc
    finally:
        storage.close()

    table = Table(title=f"Search: {query!r} ({result.total_results} results)")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Year", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Status")
    table.add_column("Genres")
    table.add_column("Id")
    for row in [*result.anime, *result.manga]:
        table.add_row(
            row.content_type,
            escape(row.title),
            str(row.year or "-"),
            str(row.score if row.score is not None else "-"),
            row.status or "-",
            ", ".join(row.genres),
            row.id,
        )
    console.print(table)


@app.command()
def export(
    ctx: typer.Context,
    out_dir: Path = typer.Option(Path("./output/parquet"), file_okay=False, dir_okay=True, writable=True),
) -> None:
    """Write the catalog, lists and job log to parquet plus a manifest."""

    settings = _settings(ctx)
    if not settings.db_path.exists():
        raise typer.BadParameter(f"SQLite catalog not found at {settings.db_path}", param_hint="--db")
    out_dir = out_dir.resolve()
    manifest = export_catalog_to_parquet(db_path=settings.db_path, out_dir=out_dir)

    table = Table(title="Export Summary")
    table.add_column("Dataset")
    table.add_column("Rows", justify="right")
    for dataset, count in manifest["counts"].items():
        table.add_row(dataset, str(count))
    console.print(table)
    for check, value in manifest["quality_checks"].items():
        if value:
            console.print(f"[bold yellow]Warning:[/bold yellow] {check}={value}")
    console.print(f"Manifest: {out_dir / MANIFEST_NAME}")


def _print_entry(entry: ListEntry) -> None:
    total = entry.total if entry.total is not None else "?"
    console.print(
        f"{escape(entry.title)} ({entry.status_label}) progress={entry.progress}/{total} "
        f"score={entry.score if entry.score is not None else '-'} id={entry.id}"
    )


@lists_app.command("add")
def lists_add(
    ctx: typer.Context,
    title_id: str = typer.Argument(...),
    status: str = typer.Argument(...),
    user: str = typer.Option(..., "--user"),
    score: int | None = typer.Option(None),
    notes: str | None = typer.Option(None),
) -> None:
    """Add a catalog title to a user's list."""

    storage = _open_storage(_settings(ctx))
    try:
        entry = add_to_list(storage, user, title_id, status, score=score, notes=notes)
    except ListEntryError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        storage.close()
    _print_entry(entry)


@lists_app.command("update")
def lists_update(
    ctx: typer.Context,
    entry_id: str = typer.Argument(...),
    user: str = typer.Option(..., "--user"),
    status: str | None = typer.Option(None),
    score: int | None = typer.Option(None),
    progress: int | None = typer.Option(None),
    notes: str | None = typer.Option(None),
) -> None:
    """Change status, score, progress or notes of a list entry."""

    storage = _open_storage(_settings(ctx))
    try:
        entry = update_entry(
            storage,
            user,
            entry_id,
            status=status,
            score=score,
            progress=progress,
            notes=notes,
        )
    except ListEntryError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        storage.close()
    _print_entry(entry)


@lists_app.command("remove")
def lists_remove(
    ctx: typer.Context,
    entry_id: str = typer.Argument(...),
    user: str = typer.Option(..., "--user"),
) -> None:
    """Remove an entry from a user's list."""

    storage = _open_storage(_settings(ctx))
    try:
        remove_from_list(storage, user, entry_id)
    except ListEntryError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        storage.close()
    console.print(f"Removed {entry_id}")


@lists_app.command("show")
def lists_show(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user"),
) -> None:
    """Print a user's anime and manga lists with per-status counts."""

    storage = _open_storage(_settings(ctx))
    try:
        lists = get_user_lists(storage, user)
        counts = {media_type: status_counts(storage, user, media_type) for media_type in lists}
    finally:
        storage.close()

    for media_type, entries in lists.items():
        table = Table(title=f"{user}: {media_type}")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("Updated")
        table.add_column("Id")
        for entry in entries:
            total = entry.total if entry.total is not None else "?"
            table.add_row(
                escape(entry.title),
                entry.status_label,
                f"{entry.progress}/{total}",
                str(entry.score if entry.score is not None else "-"),
                entry.updated_at,
                entry.id,
            )
        console.print(table)
        summary = ", ".join(f"{status}={count}" for status, count in counts[media_type].items())
        console.print(f"{media_type} counts: {summary}")


if __name__ == "__main__":
    app()
