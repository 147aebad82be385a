"""CLI entrypoint for batchmesh."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from batchmesh import __version__
from batchmesh.controllers import (
    BatchCancelCommand,
    BatchmeshCliController,
    BatchSubmitCommand,
    CoordinatorRunCommand,
    SingleNodeRunCommand,
    StatusCommand,
    WorkerRunCommand,
)
from batchmesh.errors import BatchmeshError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BatchmeshCliController()

_BROKER_PATH_OPTION = click.option(
    "--broker-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Shared SQLite broker file. Defaults to `BATCHMESH_BROKER_PATH`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="batchmesh")
def batchmesh() -> None:
    """Fault-tolerant batch distribution over a shared broker."""


@batchmesh.group()
def coordinator() -> None:
    """Coordinator commands."""


@coordinator.command("run")
@_BROKER_PATH_OPTION
@click.option(
    "--channel-id",
    default=None,
    help="Channel that receives forwarded results. Defaults to `BATCHMESH_FORWARD_CHANNEL_ID`.",
)
def coordinator_run(broker_path: Path | None, channel_id: str | None) -> None:
    """Run the coordinator until SIGINT/SIGTERM."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_coordinator(
                CoordinatorRunCommand(broker_path=broker_path, channel_id=channel_id),
            ),
        ),
    )


@batchmesh.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@_BROKER_PATH_OPTION
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processed tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls.",
)
@click.option("--worker-id", default=None, help="Stable worker id. Generated when omitted.")
def worker_run(
    broker_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    worker_id: str | None,
) -> None:
    """Pull tasks from the shared queues and process them."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerRunCommand(
                    broker_path=broker_path,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                    worker_id=worker_id,
                ),
            ),
        ),
    )


@batchmesh.group()
def batch() -> None:
    """Batch submission and cancellation."""


@batch.command("submit")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_BROKER_PATH_OPTION
@click.option("--batch-id", default=None, help="Batch id. Generated when omitted.")
@click.option("--chat-id", default=None, help="Where progress and summary messages go.")
@click.option("--batch-type", default="default", show_default=True, help="Free-form batch label.")
def batch_submit(
    file_path: Path,
    broker_path: Path | None,
    batch_id: str | None,
    chat_id: str | None,
    batch_type: str,
) -> None:
    """Submit a file of `username:password` lines as one batch."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.submit_batch(
                BatchSubmitCommand(
                    broker_path=broker_path,
                    file_path=file_path,
                    batch_id=batch_id,
                    chat_id=chat_id,
                    batch_type=batch_type,
                ),
            ),
        ),
    )


@batch.command("cancel")
@click.argument("batch_id")
@_BROKER_PATH_OPTION
def batch_cancel(batch_id: str, broker_path: Path | None) -> None:
    """Cancel a batch and drain its queued tasks."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.cancel_batch(
                BatchCancelCommand(broker_path=broker_path, batch_id=batch_id),
            ),
        ),
    )


@batchmesh.command("status")
@_BROKER_PATH_OPTION
@click.option(
    "--prometheus",
    is_flag=True,
    default=False,
    help="Print task metrics in Prometheus text format.",
)
def status(broker_path: Path | None, prometheus: bool) -> None:
    """Show queue depth, worker health, proxy health and task metrics."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.status(StatusCommand(broker_path=broker_path, prometheus=prometheus)),
        ),
    )


@batchmesh.group("single-node")
def single_node() -> None:
    """In-process mode without a shared broker."""


@single_node.command("run")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Local worker threads. Defaults to `BATCHMESH_CONCURRENCY`.",
)
@click.option(
    "--store-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSONL processed store path.",
)
@click.option("--chat-id", default=None, help="Where the summary message goes.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0.1),
    default=300.0,
    show_default=True,
    help="Give up waiting after this many seconds.",
)
def single_node_run(
    file_path: Path,
    concurrency: int | None,
    store_path: Path | None,
    chat_id: str | None,
    timeout_seconds: float,
) -> None:
    """Process a credential file in this process and print the final counts."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_single_node(
                SingleNodeRunCommand(
                    file_path=file_path,
                    concurrency=concurrency,
                    store_path=store_path,
                    chat_id=chat_id,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        ),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (BatchmeshError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batchmesh()
