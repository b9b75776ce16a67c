"""CLI entrypoint for batch-heal."""

import logging
from pathlib import Path

import rich_click as click

from batch_heal import __version__
from batch_heal.controllers import (
    BatchCliController,
    CheckpointFilesCommand,
    CheckpointsListCommand,
    PlanCommand,
    RunInspectCommand,
    RunsListCommand,
    VttCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="batch-heal")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def batch_heal(log_level: str) -> None:
    """Resumable, self-healing batch execution CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@batch_heal.command("plan")
@click.option("--source", required=True, help="Path of the recording to plan.")
@click.option(
    "--duration-seconds",
    type=click.FloatRange(min=0),
    required=True,
    help="Recording duration in seconds.",
)
@click.option(
    "--chunk-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Window length; defaults to BATCH_HEAL_CHUNK_SECONDS.",
)
def plan(source: str, duration_seconds: float, chunk_seconds: int | None) -> None:
    """Print the deterministic run id and work units for a recording."""

    _emit_lines(
        CONTROLLER.plan(
            PlanCommand(
                source=source,
                duration_seconds=duration_seconds,
                chunk_seconds=chunk_seconds,
            ),
        ),
    )


@batch_heal.command("vtt")
@click.option(
    "--path",
    "vtt_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Existing WebVTT transcript.",
)
def vtt(vtt_path: Path) -> None:
    """Render an existing WebVTT transcript without running any units."""

    _emit_lines(CONTROLLER.render_vtt(VttCommand(path=vtt_path)))


@batch_heal.group()
def runs() -> None:
    """Run journal commands."""


@runs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many latest runs to display.",
)
def runs_list(db_path: Path | None, limit: int) -> None:
    """List recently journaled runs."""

    _emit_lines(CONTROLLER.list_runs(RunsListCommand(db_path=db_path, limit=limit)))


@runs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id to inspect.")
def runs_inspect(db_path: Path | None, run_id: str) -> None:
    """Show run summary, checkpoint coverage and pending units."""

    _emit_lines(CONTROLLER.inspect_run(RunInspectCommand(db_path=db_path, run_id=run_id)))


@batch_heal.group()
def checkpoints() -> None:
    """Checkpoint commands."""


@checkpoints.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id whose checkpoints to list.")
def checkpoints_list(db_path: Path | None, run_id: str) -> None:
    """List checkpointed unit indices with their checksums."""

    _emit_lines(
        CONTROLLER.list_checkpoints(CheckpointsListCommand(db_path=db_path, run_id=run_id)),
    )


@checkpoints.command("files")
@click.option(
    "--checkpoint-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="File checkpoint root; defaults to BATCH_HEAL_CHECKPOINT_DIR.",
)
@click.option("--run-id", required=True, help="Run id whose checkpoint files to list.")
def checkpoints_files(checkpoint_dir: Path | None, run_id: str) -> None:
    """List unit checkpoint files written by the file store."""

    _emit_lines(
        CONTROLLER.list_checkpoint_files(
            CheckpointFilesCommand(checkpoint_dir=checkpoint_dir, run_id=run_id),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batch_heal()
