"""Configuration models for imagegate.

Pydantic v2 models for process-wide settings and per-run options. Every
field can be overridden via environment variables, making the same code
path usable from a terminal and from CI.

Key Concepts:
    PipelineSettings: Where and how the tooling runs (repository root,
        build platform, floating tag, host-port range, polling interval,
        docker binary, log settings). ``IMAGEGATE_*`` env vars.
    PipelineRun: One pipeline invocation (service selection, version tag,
        namespace, dry-run and per-stage skip flags). Stage enablement is
        derived once, at construction, into ``build_enabled``,
        ``verify_enabled`` and ``push_enabled``; the orchestrator reads
        those fields and never re-derives them.
    Stage: Enum of the ordered pipeline stages.

Architecture Decisions:
    - ``from_env()`` classmethod: explicit env-var parsing rather than
      ``pydantic-settings``, keeping the dependency surface small.
    - Override precedence: kwargs (CLI flags) > env vars > field defaults.
    - ``PipelineRun`` is frozen: skip/override state cannot drift mid-run.
    - Validation failures surface as ``ConfigurationError`` before any
      side effect.

Tags:
    config, settings, pydantic, environment, pipeline-run
"""

from __future__ import annotations

import os
import re
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from imagegate.core.errors import ConfigurationError

_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_NAMESPACE_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_NAMESPACE_RE = re.compile(
    rf"^{_NAMESPACE_COMPONENT}(?::[0-9]+)?(?:/{_NAMESPACE_COMPONENT})*$"
)

_TRUE_VALUES = ("true", "1", "yes", "on")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Stage(str, Enum):
    """Ordered pipeline stages."""

    BUILD = "build"
    VERIFY = "verify"
    PUSH = "push"


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def _env_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _parse_port_range(value: str) -> tuple[int, int]:
    low, sep, high = value.partition("-")
    if not sep:
        raise ValueError(f"expected LOW-HIGH, got {value!r}")
    return int(low), int(high)


def _config_error(exc: ValidationError, model: str) -> ConfigurationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or model}: {err['msg']}"
        for err in exc.errors()
    )
    return ConfigurationError(f"Invalid {model} configuration: {problems}", cause=exc)


class PipelineSettings(BaseModel):
    """Process-wide settings for the pipeline tooling.

    Example::

        settings = PipelineSettings(repo_root=Path("/src/workadventure"))
        settings.port_range
        (20000, 59999)
    """

    repo_root: Path = Field(
        default_factory=Path.cwd,
        description="Repository root: build context and base for descriptor paths",
    )
    platform: str = Field(
        default="linux/amd64",
        description="Target platform passed to the image build",
    )
    floating_tag: str = Field(
        default="latest",
        description="Rewritable registry tag republished after versioned pushes",
    )
    port_range_low: int = Field(default=20000, ge=1024, le=65535)
    port_range_high: int = Field(default=59999, ge=1024, le=65535)
    poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between verification health polls",
    )
    stop_timeout: int = Field(
        default=10,
        ge=0,
        description="Grace period when stopping an ephemeral instance",
    )
    log_tail_lines: int = Field(
        default=30,
        gt=0,
        description="Log lines captured as failure context",
    )
    docker_binary: str = Field(default="docker", description="Container tool executable")
    log_level: str = Field(default="INFO")
    log_json: bool | None = Field(
        default=None,
        description="JSON logs (None = auto: JSON when stderr is not a TTY)",
    )

    @field_validator("floating_tag")
    @classmethod
    def _check_floating_tag(cls, value: str) -> str:
        if not _TAG_RE.match(value):
            raise ValueError(f"not a valid image tag: {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(_LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def _check_port_range(self) -> PipelineSettings:
        if self.port_range_low >= self.port_range_high:
            raise ValueError(
                f"port range {self.port_range_low}-{self.port_range_high} is empty"
            )
        return self

    @property
    def port_range(self) -> tuple[int, int]:
        return self.port_range_low, self.port_range_high

    @classmethod
    def from_env(cls, **overrides: Any) -> PipelineSettings:
        """Create settings from IMAGEGATE_* environment variables."""
        env_map = {
            "repo_root": "IMAGEGATE_REPO_ROOT",
            "platform": "IMAGEGATE_PLATFORM",
            "floating_tag": "IMAGEGATE_FLOATING_TAG",
            "port_range": "IMAGEGATE_PORT_RANGE",
            "poll_interval": "IMAGEGATE_POLL_INTERVAL",
            "docker_binary": "IMAGEGATE_DOCKER",
            "log_level": "IMAGEGATE_LOG_LEVEL",
            "log_json": "IMAGEGATE_LOG_JSON",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is None or env_val == "":
                continue
            if field_name == "port_range":
                try:
                    values["port_range_low"], values["port_range_high"] = _parse_port_range(env_val)
                except ValueError as exc:
                    raise ConfigurationError(
                        f"Invalid {env_var}: {exc}", cause=exc
                    ).with_context(key=env_var) from exc
            elif field_name == "log_json":
                values[field_name] = _env_bool(env_val)
            else:
                values[field_name] = env_val
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as exc:
            raise _config_error(exc, "settings") from exc


class PipelineRun(BaseModel):
    """Options for a single pipeline invocation.

    The ``*_enabled`` fields are derived from the validated ``stages``,
    skip flags and dry-run flag when the model is constructed and are the
    only thing the orchestrator consults. Dry-run always disables Push (a
    dry-run build produces no image); Verify still runs against whatever
    image is already present locally. Push is also disabled when no
    registry namespace is configured.

    Example::

        run = PipelineRun(version="v1.2.3", namespace="acme", dry_run=True)
        run.push_enabled
        False
    """

    model_config = ConfigDict(frozen=True)

    service: str | None = Field(
        default=None,
        description="Single service to process (None = full catalog)",
    )
    version: str = Field(default="latest", description="Image version tag")
    namespace: str | None = Field(
        default=None,
        description="Registry namespace (required for Push)",
    )
    dry_run: bool = False
    skip_build: bool = False
    skip_verify: bool = False
    skip_push: bool = False
    skip_cleanup: bool = Field(
        default=False,
        description="Leave passing ephemeral instances running",
    )
    skip_confirm: bool = Field(
        default=False,
        description="Do not prompt before pushing",
    )
    fail_fast: bool = Field(
        default=True,
        description="Abort the whole run on the first stage failure",
    )
    build_params: dict[str, str] | None = Field(
        default=None,
        description="Extra build parameters (None = read from environment)",
    )
    run_id: str = Field(default_factory=_new_run_id, description="Unique run identifier")
    stages: tuple[Stage, ...] = Field(
        default=tuple(Stage),
        description="Stages this invocation covers (single-stage commands narrow it)",
    )

    build_enabled: bool = True
    verify_enabled: bool = True
    push_enabled: bool = True
    skip_reasons: dict[str, str] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not _TAG_RE.match(value):
            raise ValueError(f"not a valid image tag: {value!r}")
        return value

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if not _NAMESPACE_RE.match(value):
            raise ValueError(f"not a valid registry namespace: {value!r}")
        return value

    @field_validator("service")
    @classmethod
    def _normalize_service(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("run_id")
    @classmethod
    def _fill_run_id(cls, value: str) -> str:
        return value or _new_run_id()

    @model_validator(mode="after")
    def _derive_stages(self) -> PipelineRun:
        reasons: dict[str, str] = {
            stage.value: "not part of this command" for stage in Stage if stage not in self.stages
        }
        if self.skip_build:
            reasons.setdefault(Stage.BUILD.value, "skipped by operator")
        if self.skip_verify:
            reasons.setdefault(Stage.VERIFY.value, "skipped by operator")
        if self.skip_push:
            reasons.setdefault(Stage.PUSH.value, "skipped by operator")
        elif self.dry_run:
            reasons.setdefault(Stage.PUSH.value, "dry-run")
        elif not self.namespace:
            reasons.setdefault(Stage.PUSH.value, "no registry namespace configured")

        # frozen model: derived fields are written once, here
        object.__setattr__(self, "skip_reasons", reasons)
        object.__setattr__(self, "build_enabled", Stage.BUILD.value not in reasons)
        object.__setattr__(self, "verify_enabled", Stage.VERIFY.value not in reasons)
        object.__setattr__(self, "push_enabled", Stage.PUSH.value not in reasons)
        return self

    def stage_enabled(self, stage: Stage) -> bool:
        return {
            Stage.BUILD: self.build_enabled,
            Stage.VERIFY: self.verify_enabled,
            Stage.PUSH: self.push_enabled,
        }[stage]

    def enabled_stages(self) -> list[Stage]:
        return [stage for stage in Stage if self.stage_enabled(stage)]

    @classmethod
    def from_env(cls, **overrides: Any) -> PipelineRun:
        """Create a run from IMAGEGATE_* environment variables.

        ``None`` overrides are ignored so that unset CLI options fall
        through to the environment.
        """
        env_map = {
            "service": "IMAGEGATE_SERVICE",
            "version": "IMAGEGATE_VERSION",
            "namespace": "IMAGEGATE_NAMESPACE",
            "dry_run": "IMAGEGATE_DRY_RUN",
            "skip_build": "IMAGEGATE_SKIP_BUILD",
            "skip_verify": "IMAGEGATE_SKIP_VERIFY",
            "skip_push": "IMAGEGATE_SKIP_PUSH",
            "skip_cleanup": "IMAGEGATE_SKIP_CLEANUP",
            "skip_confirm": "IMAGEGATE_SKIP_CONFIRM",
        }
        bool_fields = {
            "dry_run", "skip_build", "skip_verify", "skip_push",
            "skip_cleanup", "skip_confirm",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is None or env_val == "":
                continue
            if field_name in bool_fields:
                values[field_name] = _env_bool(env_val)
            else:
                values[field_name] = env_val

        if "namespace" not in values and os.environ.get("DOCKER_USERNAME"):
            values["namespace"] = os.environ["DOCKER_USERNAME"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as exc:
            raise _config_error(exc, "run") from exc
