"""Image builder for imagegate.

Turns a catalog entry and a version tag into a locally tagged image.
The build plan (image reference, descriptor, platform, parameters) is
computed once by :meth:`Builder.plan`; the dry-run path reports that plan
and the real path executes it, so both always agree.

Build parameters:
    Common      ``NODE_OPTIONS`` (default ``--max-old-space-size=16384``)
                and ``FAST_BUILD`` go to every service.
    Specific    Keys listed in ``ServiceSpec.build_param_keys`` go only
                to that service (release-tracking ``SENTRY_*`` for play).
    Empty values are dropped.

Tags:
    build, images, dry-run, build-args
"""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from imagegate.core.errors import BuildError, DockerCommandError
from imagegate.core.logging import get_logger
from imagegate.pipeline.catalog import RELEASE_TRACKING_PARAMS, ServiceSpec
from imagegate.pipeline.config import PipelineSettings
from imagegate.pipeline.docker import DockerCli, tail_lines
from imagegate.pipeline.results import BuildOutcome

logger = get_logger(__name__)

COMMON_PARAM_KEYS: tuple[str, ...] = ("NODE_OPTIONS", "FAST_BUILD")
DEFAULT_NODE_OPTIONS = "--max-old-space-size=16384"

_SECRET_MARKERS = ("TOKEN", "SECRET", "PASSWORD")
_REDACTED = "***"


def build_params_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect every known build parameter from the environment."""
    env = os.environ if environ is None else environ
    params = {key: env.get(key, "") for key in (*COMMON_PARAM_KEYS, *RELEASE_TRACKING_PARAMS)}
    if not params["NODE_OPTIONS"]:
        params["NODE_OPTIONS"] = DEFAULT_NODE_OPTIONS
    return {key: value for key, value in params.items() if value}


def redact_params(params: Mapping[str, str]) -> dict[str, str]:
    """Copy of ``params`` with secret-looking values masked."""
    return {
        key: _REDACTED if any(marker in key.upper() for marker in _SECRET_MARKERS) else value
        for key, value in params.items()
    }


@dataclass(frozen=True)
class BuildPlan:
    """Everything needed to build one image."""

    service: str
    image: str
    descriptor: Path
    context: Path
    platform: str
    build_args: dict[str, str] = field(default_factory=dict)

    def command(self) -> list[str]:
        return DockerCli.build_command(
            self.image,
            descriptor=self.descriptor,
            context=self.context,
            platform=self.platform,
            build_args=self.build_args,
        )


class Builder:
    """Builds catalog images.

    Parameters
    ----------
    settings
        Repository root, platform and docker binary.
    docker
        CLI wrapper. Created on first real build when omitted, so dry-run
        planning works without docker installed.
    params
        Build parameters to draw from. ``None`` reads the environment via
        :func:`build_params_from_env`.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        docker: DockerCli | None = None,
        params: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self._docker = docker
        self._params = dict(build_params_from_env() if params is None else params)

    @property
    def docker(self) -> DockerCli:
        if self._docker is None:
            self._docker = DockerCli(self.settings.docker_binary)
        return self._docker

    def resolve_params(self, spec: ServiceSpec) -> dict[str, str]:
        """Build parameters forwarded for ``spec``, empties dropped."""
        params = dict(self._params)
        params.setdefault("NODE_OPTIONS", DEFAULT_NODE_OPTIONS)
        allowed = (*COMMON_PARAM_KEYS, *spec.build_param_keys)
        return {key: params[key] for key in allowed if params.get(key)}

    def plan(self, spec: ServiceSpec, version: str, namespace: str | None = None) -> BuildPlan:
        """Compute the build plan.

        Raises
        ------
        BuildError
            If the image-source descriptor does not exist.
        """
        descriptor = spec.descriptor_path(self.settings.repo_root)
        image = spec.image_ref(version, namespace)
        if not descriptor.is_file():
            raise BuildError(f"Image-source descriptor not found: {descriptor}").with_context(
                service=spec.name, stage="build", image=image,
            )
        return BuildPlan(
            service=spec.name,
            image=image,
            descriptor=descriptor,
            context=self.settings.repo_root,
            platform=self.settings.platform,
            build_args=self.resolve_params(spec),
        )

    def build(
        self,
        spec: ServiceSpec,
        version: str,
        namespace: str | None = None,
        *,
        dry_run: bool = False,
    ) -> BuildOutcome:
        """Build one image, or describe the build when ``dry_run``.

        Returns
        -------
        BuildOutcome
            Successful outcome. Dry-run outcomes have ``dry_run=True`` and
            no image was created.

        Raises
        ------
        BuildError
            Missing descriptor, or the tool exited non-zero (exit code and
            output tail attached).
        """
        plan = self.plan(spec, version, namespace)
        outcome = BuildOutcome(
            service=spec.name,
            image=plan.image,
            dry_run=dry_run,
            descriptor=str(plan.descriptor),
            platform=plan.platform,
            build_params=redact_params(plan.build_args),
        )

        if dry_run:
            logger.info(
                "build.planned",
                service=spec.name,
                image=plan.image,
                params=sorted(plan.build_args),
            )
            outcome.success = True
            return outcome

        logger.info("build.started", service=spec.name, image=plan.image)
        start = time.monotonic()
        try:
            self.docker.build(
                plan.image,
                descriptor=plan.descriptor,
                context=plan.context,
                platform=plan.platform,
                build_args=plan.build_args,
            )
        except DockerCommandError as exc:
            output = tail_lines(exc.stdout + exc.stderr, self.settings.log_tail_lines)
            logger.error("build.failed", service=spec.name, image=plan.image, exit_code=exc.exit_code)
            raise BuildError(
                f"Build of {plan.image} failed (exit {exc.exit_code})", cause=exc,
            ).with_context(
                service=spec.name,
                stage="build",
                image=plan.image,
                exit_code=exc.exit_code,
                log_tail=output,
            ) from exc

        outcome.duration_seconds = time.monotonic() - start
        outcome.success = True
        logger.info(
            "build.succeeded",
            service=spec.name,
            image=plan.image,
            duration=round(outcome.duration_seconds, 1),
        )
        return outcome
