"""
Root Typer application for the imagegate CLI.

Global options configure logging once per invocation and load the
process-wide settings, which are handed to commands via ``ctx.obj``.
"""

from __future__ import annotations

import typer
from typer import Typer

from imagegate import __version__
from imagegate.cli import pipeline
from imagegate.cli.utils import fail_config
from imagegate.core.errors import ConfigurationError
from imagegate.core.logging import configure_logging
from imagegate.pipeline.config import PipelineSettings

app = Typer(
    name="imagegate",
    help="imagegate: build, verify and push container images.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"imagegate {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    log_level: str | None = typer.Option(
        None, "--log-level", "-l", help="Log level (default: IMAGEGATE_LOG_LEVEL or INFO).",
    ),
    json_logs: bool | None = typer.Option(
        None, "--json-logs/--console-logs",
        help="Log format (default: JSON when stderr is not a terminal).",
    ),
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """imagegate: build, verify and push container images."""
    try:
        settings = PipelineSettings.from_env(log_level=log_level, log_json=json_logs)
    except ConfigurationError as exc:
        raise fail_config(exc) from exc
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    ctx.obj = settings


# ── Command registration ─────────────────────────────────────────────────

app.command("build")(pipeline.build)
app.command("verify")(pipeline.verify)
app.command("push")(pipeline.push)
app.command("deploy")(pipeline.deploy)
app.command("services")(pipeline.services)
app.command("clean")(pipeline.clean)
