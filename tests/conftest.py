"""
Shared pytest fixtures for imagegate tests.

This module provides:
- A clean environment (no IMAGEGATE_*, DOCKER_USERNAME or build params)
- Captured structlog events instead of real log output
- Settings rooted in a temporary repository with image-source descriptors
- A docker CLI mock and a fake clock for the verification loop

No test needs Docker or network access.
"""

from __future__ import annotations

import os
import random
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import structlog

from imagegate.pipeline.catalog import CATALOG, DESCRIPTOR_NAME
from imagegate.pipeline.config import PipelineSettings
from imagegate.pipeline.docker import DockerCli
from imagegate.pipeline.ports import PortAllocator

_ENV_PREFIXES = ("IMAGEGATE_", "SENTRY_")
_ENV_NAMES = ("DOCKER_USERNAME", "NODE_OPTIONS", "FAST_BUILD")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove pipeline-related variables from the environment."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES) or name in _ENV_NAMES:
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def log_events() -> Iterator[list[dict[str, Any]]]:
    """Structlog events emitted during the test."""
    with structlog.testing.capture_logs() as events:
        yield events


class FakeClock:
    """Monotonic clock advanced only by ``sleep`` (or explicitly)."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """Repository with a descriptor for every catalog service."""
    for spec in CATALOG:
        descriptor = tmp_path / spec.descriptor
        descriptor.parent.mkdir(parents=True, exist_ok=True)
        descriptor.write_text("FROM scratch\n")
    return tmp_path


@pytest.fixture
def add_descriptor(repo_root: Path):
    """Create an image-source descriptor for a service outside the catalog."""

    def _add(service: str) -> Path:
        descriptor = repo_root / service / DESCRIPTOR_NAME
        descriptor.parent.mkdir(parents=True, exist_ok=True)
        descriptor.write_text("FROM scratch\n")
        return descriptor

    return _add


@pytest.fixture
def settings(repo_root: Path) -> PipelineSettings:
    return PipelineSettings(repo_root=repo_root)


@pytest.fixture
def fake_docker() -> MagicMock:
    """DockerCli mock: images exist, instances keep running, logs are quiet."""
    docker = MagicMock(spec=DockerCli)
    docker.image_exists.return_value = True
    docker.is_running.return_value = True
    docker.logs.return_value = "listening on port\n"
    docker.run_detached.return_value = "0123456789ab"
    return docker


@pytest.fixture
def ports() -> PortAllocator:
    return PortAllocator(20000, 59999, probe=lambda port: True, rng=random.Random(7))
