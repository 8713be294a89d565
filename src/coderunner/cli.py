"""Command-line entry points.

Usage:
    coderunner worker              # run the worker pool until SIGINT/SIGTERM
    coderunner api --port 4000     # serve the submission/status gateway
    coderunner prune               # drop finished jobs past retention
"""

from __future__ import annotations

import signal
import sys

import click

from .logging import setup_logging
from .settings import load_settings


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--log-level", default="INFO", show_default=True, help="Log level")
@click.pass_context
def main(ctx: click.Context, log_level: str) -> None:
    setup_logging(log_level)
    ctx.obj = load_settings()


@main.command()
@click.option("-c", "--concurrency", type=int, default=None, help="Worker threads (default from config)")
@click.option("--reap/--no-reap", default=True, show_default=True,
              help="Remove leftover job containers at startup (disable when several worker hosts share a docker daemon)")
@click.pass_obj
def worker(settings, concurrency, reap) -> None:
    """Run the worker pool."""
    from .runner.sandbox_runner import SandboxRunner
    from .services.job_store import JobQueue
    from .services.worker_pool import WorkerPool

    runner = SandboxRunner.from_settings(settings)
    if not runner.executor.ping():
        click.echo(click.style("Error: docker daemon is not reachable", fg="red", bold=True), err=True)
        sys.exit(1)
    if reap:
        runner.reap_orphans()

    queue = JobQueue(settings.db_url)
    pool = WorkerPool(
        queue,
        runner,
        concurrency or settings.concurrency,
        poll_interval_s=settings.poll_interval_s,
        max_poll_interval_s=settings.max_poll_interval_s,
        heartbeat_interval_s=settings.heartbeat_interval_s,
    )

    def _stop(*_args):
        pool.request_stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    try:
        pool.run_forever(
            janitor_interval_s=settings.janitor_interval_s,
            retention_s=settings.retention_s,
            stale_after_s=settings.stale_after_s,
        )
    finally:
        queue.close()


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=4000, show_default=True, type=int)
@click.option("--embedded-workers", is_flag=True, help="Also run the worker pool in this process")
@click.pass_obj
def api(settings, host, port, embedded_workers) -> None:
    """Serve the HTTP gateway."""
    import uvicorn

    from .api import create_app

    if embedded_workers:
        settings = settings.model_copy(update={"embedded_workers": True})
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


@main.command()
@click.option("--older-than", type=float, default=None, help="Seconds since finish (default: retention_s)")
@click.pass_obj
def prune(settings, older_than) -> None:
    """Delete finished jobs older than the retention window."""
    from .services.job_store import JobQueue

    queue = JobQueue(settings.db_url)
    try:
        n = queue.purge_finished(settings.retention_s if older_than is None else older_than)
    finally:
        queue.close()
    click.echo(f"purged {n} job(s)")


if __name__ == "__main__":
    main()
