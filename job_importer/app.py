"""Typer CLI entrypoint for the job importer."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from typing import Any, Iterable, List, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, GlobalConfig, ScheduleConfig, ScheduleType
from .engine import (
    DedupWorker,
    EnqueueOptions,
    Fetcher,
    InMemoryWorkQueue,
    JobStore,
    MongoJobStore,
    MongoRunTracker,
    RunTracker,
    SQLiteJobStore,
    SQLiteRunTracker,
    SQLiteWorkQueue,
    ThreadPoolManager,
    WorkerPool,
    WorkQueue,
)
from .engine.tracker import ImportRun, RunPage
from .infra import SQLiteManager
from .logging_conf import available_feed_logs, configure_logging, feed_slug, log_dir, tail_log
from .orchestrator import Orchestrator, TriggerResult
from .scheduler import APSchedulerAdapter

app = typer.Typer(
    help="Job feed importer command line tool",
    no_args_is_help=True,
    rich_markup_mode=None,
)
runs_app = typer.Typer(name="runs", help="Inspect import runs", no_args_is_help=True, rich_markup_mode=None)
queue_app = typer.Typer(name="queue", help="Inspect the work queue", no_args_is_help=True, rich_markup_mode=None)
log_app = typer.Typer(name="log", help="Browse log files", no_args_is_help=True, rich_markup_mode=None)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: GlobalConfig
    storage: SQLiteManager
    thread_pool: ThreadPoolManager
    store: JobStore
    tracker: RunTracker
    queue: WorkQueue
    orchestrator: Orchestrator
    scheduler: APSchedulerAdapter


def _create_store(config: GlobalConfig, repository: ConfigRepository, storage: SQLiteManager) -> JobStore:
    if config.store.backend == "mongodb":
        return MongoJobStore.connect(config.store.mongo_uri, config.store.mongo_database)
    return SQLiteJobStore(storage, repository.resolve(config.store.sqlite_path))


def _create_tracker(
    config: GlobalConfig, repository: ConfigRepository, storage: SQLiteManager
) -> RunTracker:
    if config.store.backend == "mongodb":
        return MongoRunTracker.connect(config.store.mongo_uri, config.store.mongo_database)
    return SQLiteRunTracker(storage, repository.resolve(config.store.sqlite_path))


def _create_queue(config: GlobalConfig, repository: ConfigRepository, storage: SQLiteManager) -> WorkQueue:
    options = EnqueueOptions.from_config(config.queue)
    if config.queue.backend == "memory":
        return InMemoryWorkQueue(default_options=options)
    return SQLiteWorkQueue(
        storage,
        repository.resolve(config.queue.path),
        default_options=options,
        visibility_timeout=config.queue.visibility_timeout,
        poll_interval=config.queue.poll_interval,
    )


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    config = repository.load_global_config()
    configure_logging(verbose=verbose)
    storage = SQLiteManager()
    thread_pool = ThreadPoolManager(max(config.worker.concurrency, config.feed_workers))
    store = _create_store(config, repository, storage)
    tracker = _create_tracker(config, repository, storage)
    queue = _create_queue(config, repository, storage)
    orchestrator = Orchestrator(
        fetcher=Fetcher(config.fetch),
        queue=queue,
        tracker=tracker,
        thread_pool=thread_pool,
        global_config=config,
    )
    return AppState(
        repository=repository,
        config=config,
        storage=storage,
        thread_pool=thread_pool,
        store=store,
        tracker=tracker,
        queue=queue,
        orchestrator=orchestrator,
        scheduler=APSchedulerAdapter(),
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _build_pool(state: AppState, concurrency: Optional[int]) -> WorkerPool:
    return WorkerPool(
        queue=state.queue,
        worker=DedupWorker(state.store, state.tracker),
        tracker=state.tracker,
        concurrency=concurrency or state.config.worker.concurrency,
        poll_interval=state.config.queue.poll_interval,
        thread_pool=state.thread_pool,
    )


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _format_schedule(schedule: ScheduleConfig) -> str:
    if schedule.type is ScheduleType.CRON:
        return f"cron: {schedule.value}"
    if schedule.type is ScheduleType.INTERVAL:
        if isinstance(schedule.value, dict):
            parts = ", ".join(f"{key}={val}" for key, val in schedule.value.items())
            return f"interval: {parts}"
        return f"interval: every {schedule.value}s"
    return f"once: {schedule.value or 'now'}"


def _render_trigger_table(result: TriggerResult) -> Table:
    table = Table(title=f"Run {result.run_id}", box=box.SIMPLE_HEAD)
    table.add_column("Feed", style="cyan", overflow="fold")
    table.add_column("Fetched", justify="right", style="green")
    table.add_column("Error", style="red", overflow="fold")
    for line in result.results:
        table.add_row(
            line.feed_url,
            "-" if line.fetched is None else str(line.fetched),
            line.error or "",
        )
    return table


def _render_runs_table(page: RunPage) -> Table:
    table = Table(
        title=f"Import runs (page {page.page}, {len(page.items)} of {page.total})",
        box=box.SIMPLE_HEAD,
    )
    table.add_column("Run ID", style="cyan", no_wrap=True)
    table.add_column("Created", style="dim")
    table.add_column("Status", style="magenta")
    table.add_column("Fetched", justify="right")
    table.add_column("Imported", justify="right")
    table.add_column("New", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    for run in page.items:
        table.add_row(
            run.run_id,
            run.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            run.status.value,
            str(run.total_fetched),
            str(run.total_imported),
            str(run.new_jobs),
            str(run.updated_jobs),
            str(run.failed_jobs_count),
        )
    return table


def _render_run_detail(run: ImportRun) -> Iterable[Table]:
    summary = Table(title=f"Run {run.run_id}", box=box.MINIMAL_DOUBLE_HEAD, show_header=False)
    summary.add_column("Field", style="dim")
    summary.add_column("Value", style="cyan", overflow="fold")
    for key, value in run.to_dict().items():
        if key == "failedJobs":
            continue
        summary.add_row(key, "-" if value is None else str(value))
    yield summary
    if run.failed_jobs:
        failures = Table(title="Failures", box=box.SIMPLE_HEAD)
        failures.add_column("External ID", style="cyan", overflow="fold")
        failures.add_column("Reason", style="red", overflow="fold")
        failures.add_column("Recorded", style="dim")
        for failure in run.failed_jobs:
            item = failure.item or {}
            failures.add_row(
                str(item.get("externalId", "-")),
                failure.reason,
                failure.recorded_at.isoformat() if failure.recorded_at else "-",
            )
        yield failures


def _render_stats_table(stats: dict[str, int]) -> Table:
    table = Table(title="Worker summary", box=box.SIMPLE_HEAD)
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right", style="green")
    for key, value in stats.items():
        table.add_row(key, str(value))
    return table


def _wait_for_interrupt() -> None:
    stopper = Event()
    try:
        while not stopper.wait(1.0):
            pass
    except KeyboardInterrupt:
        console.print("Stopping...", style="yellow")


app.add_typer(runs_app, name="runs", help="List import runs or show one run's failures")
app.add_typer(queue_app, name="queue", help="Queue depth and dead letters")
app.add_typer(log_app, name="log", help="List or tail log files")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging")
) -> None:
    ctx.obj = build_state(verbose)


@app.command("trigger", help="Fetch feeds now and enqueue their items.")
def trigger(
    ctx: typer.Context,
    feeds: Optional[List[str]] = typer.Option(
        None, "--feed", "-f", help="Feed URL to import (repeatable); defaults to configured feeds."
    ),
    label: Optional[str] = typer.Option(None, "--label", help="Run label stored as fileName."),
    as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON."),
) -> None:
    state = _get_state(ctx)
    try:
        result = state.orchestrator.trigger(feeds or None, label=label)
    except ValueError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)
    finally:
        state.orchestrator.close()
    if as_json:
        _echo_json(result.to_dict())
    else:
        console.print(_render_trigger_table(result))
        console.print(
            f"Enqueued {result.total_fetched} item(s) for run {result.run_id}.",
            style="green",
        )
    if any(not line.ok for line in result.results):
        raise typer.Exit(code=1)


@app.command("worker", help="Consume queued work items.")
def worker(
    ctx: typer.Context,
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Consumer threads."),
    drain: bool = typer.Option(
        False, "--drain", help="Exit once the queue is empty instead of running forever."
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Upper bound in seconds for --drain."),
) -> None:
    state = _get_state(ctx)
    pool = _build_pool(state, concurrency)
    if drain:
        stats = pool.run_until_idle(timeout=timeout)
        console.print(_render_stats_table(stats.as_dict()))
        return
    pool.start()
    console.print(f"Worker pool running with {pool.concurrency} consumer(s). Ctrl+C to stop.", style="cyan")
    _wait_for_interrupt()
    pool.stop(timeout=30)
    console.print(_render_stats_table(pool.stats.as_dict()))


@app.command("serve", help="Run the worker pool and the scheduled import trigger.")
def serve(
    ctx: typer.Context,
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Consumer threads."),
    run_now: bool = typer.Option(False, "--run-now", help="Trigger one import immediately."),
) -> None:
    state = _get_state(ctx)
    logger = configure_logging().bind(component="serve")

    def _scheduled_trigger() -> None:
        try:
            result = state.orchestrator.trigger()
        except ValueError as exc:
            logger.error("scheduled_trigger_skipped", error=str(exc))
            return
        logger.info("scheduled_trigger_done", **result.to_dict())

    pool = _build_pool(state, concurrency)
    pool.start()
    state.scheduler.schedule_import(state.config.schedule, _scheduled_trigger)
    state.scheduler.start()
    console.print(f"Import scheduled ({_format_schedule(state.config.schedule)}). Ctrl+C to stop.", style="cyan")
    if run_now:
        _scheduled_trigger()
    try:
        _wait_for_interrupt()
    finally:
        state.scheduler.shutdown()
        pool.stop(timeout=30)
        state.orchestrator.close()


@runs_app.command("list", help="List import runs, newest first.")
def runs_list(
    ctx: typer.Context,
    page: int = typer.Option(1, "--page", help="Page number (1-based)."),
    page_size: Optional[int] = typer.Option(None, "--page-size", help="Runs per page."),
    as_json: bool = typer.Option(False, "--json", help="Print the page as JSON."),
) -> None:
    state = _get_state(ctx)
    result = state.orchestrator.list_runs(page=page, page_size=page_size)
    if as_json:
        _echo_json(result.to_dict())
        return
    if not result.items:
        console.print("No import runs recorded yet.", style="dim")
        return
    console.print(_render_runs_table(result))


@runs_app.command("show", help="Show one run with its failure details.")
def runs_show(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    as_json: bool = typer.Option(False, "--json", help="Print the run as JSON."),
) -> None:
    state = _get_state(ctx)
    run = state.orchestrator.get_run(run_id)
    if run is None:
        console.print(f"Run `{run_id}` not found.", style="red")
        raise typer.Exit(code=1)
    if as_json:
        _echo_json(run.to_dict())
        return
    for table in _render_run_detail(run):
        console.print(table)


@queue_app.command("status", help="Show queue depth and recent dead letters.")
def queue_status(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", help="Dead letters to show."),
) -> None:
    state = _get_state(ctx)
    outstanding = state.queue.outstanding()
    dead = state.queue.dead_letters(limit=limit)
    console.print(f"Outstanding work items: {outstanding}", style="cyan")
    if not dead:
        console.print("No dead letters.", style="dim")
        return
    table = Table(title="Dead letters", box=box.SIMPLE_HEAD)
    table.add_column("Queue ID", style="cyan")
    table.add_column("Run ID", style="dim", no_wrap=True)
    table.add_column("External ID", overflow="fold")
    table.add_column("Attempts", justify="right")
    table.add_column("Reason", style="red", overflow="fold")
    for letter in dead:
        item = letter.work_item.item
        table.add_row(
            letter.queue_id,
            letter.work_item.run_id,
            item.external_id if item else "-",
            str(letter.attempts_made),
            letter.reason,
        )
    console.print(table)


@log_app.command("list", help="List available log files.")
def log_list() -> None:
    logs = list(available_feed_logs())
    console.print("Log files:", style="cyan")
    if not logs:
        console.print("No feed logs have been written yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="Show the tail of the global log or one feed's log.")
def log_show(
    feed: Optional[str] = typer.Option(None, "--feed", help="Feed URL or log name (global log when omitted)."),
    tail: int = typer.Option(100, "--tail", help="Number of trailing lines."),
) -> None:
    base_dir = log_dir()
    if feed:
        name = feed if "://" not in feed else feed_slug(feed)
        path: Path = base_dir / "feeds" / f"{Path(name).stem}.log"
    else:
        path = base_dir / "importer.log"
    lines = tail_log(path, tail)
    if not lines:
        console.print("No log lines yet.", style="dim")
        return
    console.print(f"{'Feed log' if feed else 'Global log'} · last {len(lines)} line(s)", style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
