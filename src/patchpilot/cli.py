"""Command line entry points for patchpilot."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from .config import (
    DEFAULT_CONFIG_NAME,
    PatchPilotConfig,
    default_config_data,
    load_config,
    parse_positive_int,
    resolve_max_retries,
    write_config,
)
from .errors import PipelineError
from .meta_controller import MetaController
from .run_controller import RunController

APP_HELP = "Guarded change pipeline: research, plan, patch and validate one task at a time."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    level = getattr(logging, log_level.strip().upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load(config: str, *, max_retries: Optional[str] = None) -> tuple[PatchPilotConfig, Path, Path]:
    config_path = Path(config)
    try:
        settings = load_config(config_path)
        if max_retries is not None:
            settings.pipeline.max_retries = resolve_max_retries(max_retries)
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error
    except (ValueError, PipelineError) as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error
    return settings, config_path, settings.resolve_repo_root(config_path)


@app.command()
def run(
    words: Optional[List[str]] = typer.Argument(None, help="Task text, when --task is not given."),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Task to carry out."),
    resume: Optional[str] = typer.Option(None, "--resume", help="Meta run id to resume."),
    max_retries: Optional[str] = typer.Option(None, "--max-retries", help="Retry bound for each step."),
    self_heal: Optional[bool] = typer.Option(
        None,
        "--self-heal/--no-self-heal",
        help="Synthesize fix tasks when a step fails validation.",
    ),
    max_self_heal_attempts: Optional[int] = typer.Option(None, "--max-self-heal-attempts"),
    stall_threshold: Optional[int] = typer.Option(None, "--self-heal-stall-threshold"),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Plan a task into steps and drive each one through an isolated run."""
    task_text = (task or " ".join(words or [])).strip()
    if not task_text and not resume:
        raise typer.BadParameter("Provide --task, free task text or --resume.", param_hint="--task")

    settings, config_path, repo_root = _load(config, max_retries=max_retries)
    meta = settings.meta
    if self_heal is not None:
        meta.self_heal = self_heal
    meta.max_self_heal_attempts = parse_positive_int(max_self_heal_attempts, meta.max_self_heal_attempts)
    meta.stall_threshold = parse_positive_int(stall_threshold, meta.stall_threshold)

    controller = MetaController(settings, repo_root, config_path=config_path.resolve())
    try:
        exit_code = controller.resume_task(resume) if resume else controller.run_task(task_text)
    except PipelineError as error:
        typer.echo(f"Meta run failed [{error.code.value}]: {error}")
        raise typer.Exit(code=1) from error

    typer.echo("Meta run passed." if exit_code == 0 else "Meta run failed.")
    raise typer.Exit(code=exit_code)


@app.command()
def step(
    task: str = typer.Option(..., "--task", "-t", help="Task for this run."),
    max_retries: Optional[str] = typer.Option(None, "--max-retries", help="Retry bound for this run."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Execute one run; requires META_MODE=true or ALLOW_DIRECT=true."""
    settings, _, repo_root = _load(config, max_retries=max_retries)
    outcome = RunController(settings, repo_root, env=os.environ).run(task)
    typer.echo(f"Run {outcome.run_id}: {outcome.lifecycle_state.value}")
    if outcome.reason:
        typer.echo(f"Reason: {outcome.reason}")
    raise typer.Exit(code=outcome.exit_code)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; pass --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, default_config_data())
    typer.echo(f"Wrote {config_path}.")


if __name__ == "__main__":
    app()
