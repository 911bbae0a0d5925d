"""Command line entry point for Backup Companion."""

import signal
import sys
import threading

import click

from . import __version__, configure_logging
from .backup.executor import run_all_jobs, validate_all_destinations
from .config import ConfigLoadError, load_config
from .settings import Settings


@click.group()
@click.version_option(version=__version__, prog_name="backup-companion")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=Settings.CONFIG_PATH,
    show_default=True,
    help="Path to the YAML backup manifest",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    default=Settings.LOG_LEVEL,
    show_default=True,
    help="Logging verbosity",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=Settings.LOG_FILE,
    help="Also write logs to this file (rotated at 10MB)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str, log_level: str, log_file: str) -> None:
    """Back up databases and directories to S3-compatible object storage.

    \b
    Quick Start:
      backup-companion backup                       # Run every job in config.yaml
      backup-companion --config /etc/bc.yaml backup --job nightly
      backup-companion validate --check-connections
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["logger"] = configure_logging(log_level, log_file)


@cli.command()
@click.option(
    "--job",
    "job_names",
    multiple=True,
    help="Run only this job (repeatable). Default: all jobs",
)
@click.option(
    "--parallel",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of jobs to run at the same time",
)
@click.pass_context
def backup(ctx: click.Context, job_names: tuple, parallel: int) -> None:
    """Run the configured backup jobs once."""
    logger = ctx.obj["logger"]
    config = _load_config_or_exit(ctx.obj["config_path"])

    if job_names:
        unknown = [name for name in job_names if name not in config.jobs]
        if unknown:
            click.secho(f"✗ Unknown job(s): {', '.join(unknown)}", fg="red", err=True)
            sys.exit(1)

    cancel_event = threading.Event()

    def request_cancel(signum, frame):
        logger.warning("Termination requested, cancelling running backups")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGTERM, request_cancel)
    try:
        runs = run_all_jobs(
            config,
            logger=logger,
            max_workers=parallel,
            cancel_event=cancel_event,
            job_names=job_names or None
        )
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    click.echo("")
    for run in runs:
        if run.succeeded:
            click.secho(f"✓ {run.job_name}: {run.status.value} ({run.object_key})", fg="green")
        else:
            click.secho(f"✗ {run.job_name}: {run.status.value}", fg="red")
            for message in run.errors:
                click.echo(f"    {message}")


@cli.command()
@click.option(
    "--check-connections",
    is_flag=True,
    default=False,
    help="Also check that every destination bucket is reachable",
)
@click.pass_context
def validate(ctx: click.Context, check_connections: bool) -> None:
    """Validate the backup manifest without running any job."""
    config = _load_config_or_exit(ctx.obj["config_path"])

    if check_connections:
        errors = validate_all_destinations(config, logger=ctx.obj["logger"])
        if errors:
            click.secho("✗ Some remote destinations failed validation:", fg="red", err=True)
            for message in errors:
                click.echo(f"  - {message}", err=True)
            sys.exit(1)

    click.secho(
        f"✓ Configuration is valid: {len(config.jobs)} job(s), "
        f"{len(config.destinations)} destination(s)",
        fg="green"
    )


def _load_config_or_exit(config_path: str):
    try:
        return load_config(config_path)
    except ConfigLoadError as e:
        click.secho(f"✗ Failed to load config: {e}", fg="red", err=True)
        sys.exit(1)


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
