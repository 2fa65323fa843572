"""
CLI: pipeline commands. ``build``, ``verify``, ``push``, ``deploy``,
plus the ``services`` and ``clean`` helpers.

Usage::

    imagegate build --version v1.2.3 --dry-run        # show the build plan
    imagegate verify --service back --skip-cleanup    # leave a passing instance up
    imagegate push --version v1.2.3 --namespace acme  # asks before pushing
    imagegate deploy --version v1.2.3 --namespace acme

    imagegate services                                # list the catalog
    imagegate clean                                   # remove orphaned instances

``deploy`` runs Build → Verify → Push and stops at the first failure.
The single-stage commands attempt every selected service and list all
failures. Exit codes: 0 success, 1 a service failed, 2 bad input.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import typer
from rich.table import Table

from imagegate.cli.utils import (
    console,
    exit_for,
    fail_config,
    print_run_result,
)
from imagegate.core.errors import ConfigurationError
from imagegate.pipeline.catalog import CATALOG
from imagegate.pipeline.config import PipelineRun, PipelineSettings, Stage
from imagegate.pipeline.docker import DockerCli
from imagegate.pipeline.orchestrator import Orchestrator
from imagegate.pipeline.verifier import install_cleanup_handlers

ServiceOpt = typer.Option(
    None, "--service", "-s",
    help="Single service to process (default: whole catalog).",
)
VersionOpt = typer.Option(None, "--version", "-v", help="Image version tag (default: latest).")
NamespaceOpt = typer.Option(
    None, "--namespace", "-n",
    help="Registry namespace (default: IMAGEGATE_NAMESPACE or DOCKER_USERNAME).",
)
JsonOpt = typer.Option(False, "--json", help="Print the run result as JSON.")


def _settings(ctx: typer.Context) -> PipelineSettings:
    if isinstance(ctx.obj, PipelineSettings):
        return ctx.obj
    try:
        return PipelineSettings.from_env()
    except ConfigurationError as exc:
        raise fail_config(exc) from exc


def _flag(value: bool) -> bool | None:
    # an absent flag falls through to the environment
    return True if value else None


def _execute(
    ctx: typer.Context,
    *,
    title: str,
    json_out: bool,
    parallel: bool = False,
    before_run: Callable[[Orchestrator, PipelineRun], None] | None = None,
    **run_options: Any,
) -> None:
    settings = _settings(ctx)
    try:
        run = PipelineRun.from_env(**run_options)
        with Orchestrator(settings) as orchestrator:
            if before_run is not None:
                before_run(orchestrator, run)
            install_cleanup_handlers()
            result = orchestrator.run(run, parallel_verify=parallel)
    except ConfigurationError as exc:
        raise fail_config(exc) from exc

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        print_run_result(result, title=title)
    exit_for(result)


# ── Component commands ───────────────────────────────────────────────────


def build(
    ctx: typer.Context,
    service: str | None = ServiceOpt,
    version: str | None = VersionOpt,
    namespace: str | None = NamespaceOpt,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be built."),
    json_out: bool = JsonOpt,
) -> None:
    """Build images from their image-source descriptors."""
    _execute(
        ctx,
        title="Build Results",
        json_out=json_out,
        service=service,
        version=version,
        namespace=namespace,
        dry_run=_flag(dry_run),
        skip_build=False,
        stages=(Stage.BUILD,),
        fail_fast=False,
    )


def verify(
    ctx: typer.Context,
    service: str | None = ServiceOpt,
    version: str | None = VersionOpt,
    namespace: str | None = NamespaceOpt,
    skip_cleanup: bool = typer.Option(
        False, "--skip-cleanup", help="Leave passing instances running.",
    ),
    parallel: bool = typer.Option(False, "--parallel", "-p", help="Verify services concurrently."),
    json_out: bool = JsonOpt,
) -> None:
    """Start each image in a throwaway container and check its health."""
    _execute(
        ctx,
        title="Verification Results",
        json_out=json_out,
        parallel=parallel,
        service=service,
        version=version,
        namespace=namespace,
        dry_run=False,
        skip_verify=False,
        skip_cleanup=_flag(skip_cleanup),
        stages=(Stage.VERIFY,),
        fail_fast=False,
    )


def push(
    ctx: typer.Context,
    service: str | None = ServiceOpt,
    version: str | None = VersionOpt,
    namespace: str | None = NamespaceOpt,
    skip_confirm: bool = typer.Option(False, "--skip-confirm", "-y", help="Do not ask first."),
    json_out: bool = JsonOpt,
) -> None:
    """Push locally built images to the registry."""
    _execute(
        ctx,
        title="Push Results",
        json_out=json_out,
        before_run=_confirm_push,
        service=service,
        version=version,
        namespace=namespace,
        dry_run=False,
        skip_push=False,
        skip_confirm=_flag(skip_confirm),
        stages=(Stage.PUSH,),
        fail_fast=False,
    )


def _confirm_push(orchestrator: Orchestrator, run: PipelineRun) -> None:
    if not run.namespace:
        raise ConfigurationError(
            "A registry namespace is required to push. "
            "Use --namespace or set IMAGEGATE_NAMESPACE / DOCKER_USERNAME."
        )
    if run.skip_confirm:
        return

    specs = orchestrator.registry.select(run.service)
    pending = orchestrator.pusher.describe_pending(specs, run.version, run.namespace)
    console.print("Images to push:")
    for item in pending:
        if item.present:
            console.print(f"  [green]✓[/green] {item.image}")
        else:
            console.print(f"  [red]✗[/red] {item.image} (not found locally)")

    if not typer.confirm("Push these images to the registry?", default=False):
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(code=0)


# ── Full pipeline ────────────────────────────────────────────────────────


def deploy(
    ctx: typer.Context,
    service: str | None = ServiceOpt,
    version: str | None = VersionOpt,
    namespace: str | None = NamespaceOpt,
    skip_build: bool = typer.Option(False, "--skip-build", help="Use the existing local image."),
    skip_verify: bool = typer.Option(False, "--skip-verify", help="Do not verify before pushing."),
    skip_push: bool = typer.Option(False, "--skip-push", help="Stop after verification."),
    skip_cleanup: bool = typer.Option(
        False, "--skip-cleanup", help="Leave passing verification instances running.",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run",
        help="Plan builds without running them; verify existing images, never push.",
    ),
    json_out: bool = JsonOpt,
) -> None:
    """Build, verify and push, stopping at the first failure."""
    _execute(
        ctx,
        title="Deploy Results",
        json_out=json_out,
        service=service,
        version=version,
        namespace=namespace,
        skip_build=_flag(skip_build),
        skip_verify=_flag(skip_verify),
        skip_push=_flag(skip_push),
        skip_cleanup=_flag(skip_cleanup),
        dry_run=_flag(dry_run),
        fail_fast=True,
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def services(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List the service catalog."""
    if json_out:
        out = {
            spec.name: {
                "repository": spec.repository,
                "descriptor": spec.descriptor,
                "port": spec.port,
                "health_path": spec.health_path,
                "presence_only": spec.presence_only,
                "health_timeout": spec.health_timeout,
                "build_params": list(spec.build_param_keys),
            }
            for spec in CATALOG
        }
        typer.echo(json.dumps(out, indent=2))
        return

    table = Table(title="Services")
    table.add_column("Name", style="bold cyan")
    table.add_column("Repository")
    table.add_column("Port")
    table.add_column("Health")
    table.add_column("Timeout")
    table.add_column("Extra build params")

    for spec in CATALOG:
        health = spec.health_path + (" (any response)" if spec.presence_only else "")
        table.add_row(
            spec.name,
            spec.repository,
            str(spec.port),
            health,
            f"{spec.health_timeout}s",
            ", ".join(spec.build_param_keys) or "—",
        )

    console.print(table)


def clean(ctx: typer.Context) -> None:
    """Remove verification instances left behind by interrupted runs."""
    settings = _settings(ctx)
    try:
        docker = DockerCli(settings.docker_binary)
    except ConfigurationError as exc:
        raise fail_config(exc) from exc

    removed = docker.cleanup_orphans()
    console.print(f"[green]Removed {len(removed)} orphaned verification instance(s).[/green]")
    for name in removed:
        console.print(f"  - {name}")
