"""Container tool adapter for imagegate.

Drives the ``docker`` CLI via subprocess: image builds, local image
lookup, ephemeral instances for verification, tagging, and registry
pushes. No ``docker-py`` dependency.

Key Concepts:
    DockerCli: Thin wrapper over the CLI. ``build()``, ``image_exists()``,
        ``run_detached()``, ``status()``, ``logs()``, ``stop()``,
        ``remove()``, ``tag()``, ``push()``, ``cleanup_orphans()``.
    Labels: Every ephemeral instance gets ``imagegate.*`` labels so
        ``cleanup_orphans()`` can find instances left behind by an
        interrupted run.

Architecture Decisions:
    - subprocess, not docker-py: works with any runtime exposing a
      ``docker`` CLI (Docker Desktop, Podman, Colima, CI runners).
    - ``_run()`` raises ``DockerCommandError`` for non-zero exits unless
      ``check=False``; callers that turn a failure into a stage error
      (``BuildError``, ``PushError``) catch and rewrap it.
    - Builds and pushes have no subprocess timeout; the tool's own
      retry and timeout behaviour applies.

Tags:
    container, docker, subprocess, labels, cleanup
"""

from __future__ import annotations

import json
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from imagegate.core.errors import DockerCommandError, ToolNotFoundError
from imagegate.core.logging import get_logger

logger = get_logger(__name__)

LABEL_PREFIX = "imagegate"


class DockerCli:
    """Wrapper around the ``docker`` command-line tool.

    Parameters
    ----------
    binary
        Executable name or path (``IMAGEGATE_DOCKER``).
    label_prefix
        Label prefix for instance identification.

    Raises
    ------
    ToolNotFoundError
        If the executable cannot be found.

    Example::

        docker = DockerCli()
        if docker.image_exists("acme/play-universe:v1"):
            docker.push("acme/play-universe:v1")
    """

    def __init__(self, binary: str = "docker", label_prefix: str = LABEL_PREFIX) -> None:
        self.label_prefix = label_prefix
        self._docker_cmd = self._find_docker(binary)

    # ------------------------------------------------------------------
    # CLI discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _find_docker(binary: str) -> str:
        docker = shutil.which(binary)
        if docker is None:
            raise ToolNotFoundError(
                f"Container tool {binary!r} not found on PATH. Install Docker or "
                "set IMAGEGATE_DOCKER to the executable."
            )
        return docker

    @staticmethod
    def is_available(binary: str = "docker") -> bool:
        """Check if the CLI is installed and the daemon answers."""
        docker = shutil.which(binary)
        if docker is None:
            return False
        try:
            result = subprocess.run([docker, "info"], capture_output=True, timeout=10)
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError):
            return False

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def build(
        self,
        image: str,
        *,
        descriptor: Path,
        context: Path,
        platform: str,
        build_args: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Build and tag an image.

        Raises
        ------
        DockerCommandError
            If the build exits non-zero.
        """
        return self._run(
            self.build_command(
                image,
                descriptor=descriptor,
                context=context,
                platform=platform,
                build_args=build_args,
            ),
            timeout=None,
        )

    @staticmethod
    def build_command(
        image: str,
        *,
        descriptor: Path,
        context: Path,
        platform: str,
        build_args: Mapping[str, str] | None = None,
    ) -> list[str]:
        """Arguments for ``docker build`` (without the executable)."""
        cmd = [
            "build",
            "--platform", platform,
            "--file", str(descriptor),
            "--tag", image,
        ]
        for key, value in (build_args or {}).items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(str(context))
        return cmd

    def image_exists(self, image: str) -> bool:
        result = self._run(["image", "inspect", image], check=False)
        return result.returncode == 0

    def tag(self, source: str, target: str) -> None:
        self._run(["tag", source, target])

    def push(self, image: str) -> subprocess.CompletedProcess[str]:
        """Push an image; the registry's message is kept on failure."""
        return self._run(["push", image], timeout=None)

    # ------------------------------------------------------------------
    # Ephemeral instances
    # ------------------------------------------------------------------

    def run_detached(
        self,
        image: str,
        *,
        name: str,
        host_port: int,
        container_port: int,
        env: Mapping[str, str] | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> str:
        """Start a detached instance with one published port.

        Returns the short container id.
        """
        cmd = [
            "run", "--detach",
            "--name", name,
            "-p", f"{host_port}:{container_port}",
            "--label", f"{self.label_prefix}.managed=true",
        ]
        for key, value in (labels or {}).items():
            cmd.extend(["--label", f"{self.label_prefix}.{key}={value}"])
        for key, value in (env or {}).items():
            cmd.extend(["--env", f"{key}={value}"])
        cmd.append(image)

        result = self._run(cmd)
        container_id = result.stdout.strip()[:12]
        logger.info("container.started", container=name, image=image, host_port=host_port)
        return container_id

    def status(self, name: str) -> str:
        """Instance state (running, exited, ...) or ``not_found``."""
        result = self._run(
            ["inspect", "--format", "{{.State.Status}}", name],
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else "not_found"

    def is_running(self, name: str) -> bool:
        return self.status(name) == "running"

    def logs(self, name: str, tail: int | None = None) -> str:
        """Captured stdout and stderr of an instance."""
        cmd = ["logs"]
        if tail is not None:
            cmd.extend(["--tail", str(tail)])
        cmd.append(name)
        result = self._run(cmd, check=False)
        return result.stdout + result.stderr

    def stop(self, name: str, timeout: int = 10) -> None:
        self._run(["stop", "--time", str(timeout), name], check=False, timeout=timeout + 30)

    def remove(self, name: str) -> None:
        self._run(["rm", "--force", name], check=False)
        logger.debug("container.removed", container=name)

    def list_containers(self) -> list[dict[str, Any]]:
        """List instances carrying this tool's labels (running or not)."""
        result = self._run(
            [
                "ps", "--all",
                "--filter", f"label={self.label_prefix}.managed=true",
                "--format", "{{json .}}",
            ],
            check=False,
        )
        containers = []
        for line in result.stdout.strip().splitlines():
            if line.strip():
                try:
                    containers.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.debug("container.list_unparsed", line=line)
        return containers

    def cleanup_orphans(self) -> list[str]:
        """Remove every labelled instance. Returns the removed names."""
        removed = []
        for container in self.list_containers():
            name = container.get("Names", "")
            if not name:
                continue
            self._run(["rm", "--force", name], check=False)
            removed.append(name)
        if removed:
            logger.info("cleanup.complete", containers_removed=len(removed))
        return removed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run(
        self,
        args: list[str],
        check: bool = True,
        timeout: float | None = 60,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command."""
        cmd = [self._docker_cmd, *args]
        logger.debug("docker.exec", cmd=" ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise DockerCommandError(
                f"docker {args[0]} timed out after {timeout}s",
                args=args,
                cause=exc,
            ) from exc
        if check and result.returncode != 0:
            raise DockerCommandError(
                f"docker {args[0]} failed (exit {result.returncode}): "
                f"{result.stderr.strip() or result.stdout.strip()}",
                args=args,
                exit_code=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


def tail_lines(text: str, count: int) -> str:
    """Last ``count`` lines of ``text``."""
    lines = text.splitlines()
    return "\n".join(lines[-count:])
