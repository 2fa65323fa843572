"""
Structured error types for imagegate.

Every failure the pipeline can produce is an :class:`ImageGateError`
subclass carrying a category, a structured :class:`ErrorContext`, and
the chained underlying exception. The orchestrator records these on the
per-service stage record, the CLI renders them, and ``to_dict()`` makes
them loggable as structured fields.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                      ImageGateError                          │
        │            (category, context, cause, to_dict)               │
        ├─────────────────────────────────────────────────────────────┤
        │  ConfigurationError (CONFIG)      DockerCommandError (TOOL)  │
        │     UnknownServiceError                                      │
        │     ToolNotFoundError             BuildError (BUILD)         │
        │  PortUnavailableError (VERIFY)                               │
        │  VerificationError (VERIFY)       PushError (PUSH)           │
        │     VerificationStartError                                   │
        │     VerificationCrashError                                   │
        │     VerificationTimeoutError                                 │
        └─────────────────────────────────────────────────────────────┘

Propagation rules:
    - CONFIG errors are raised before any side effect (no cleanup needed).
    - BUILD / VERIFY / PUSH errors affect one service; under fail-fast the
      orchestrator aborts the run after recording them.
    - Nothing here is retried. The tooling's own retry behaviour is the
      only retry in the system.

Usage:
    from imagegate.core.errors import BuildError

    raise BuildError("docker build failed").with_context(
        service="play", exit_code=1, log_tail=tail,
    )

Tags:
    error-handling, exception-hierarchy, error-context, imagegate
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from imagegate.pipeline.results import VerificationOutcome


class ErrorCategory(str, Enum):
    """Standard error categories for classification and reporting."""

    CONFIG = "CONFIG"
    TOOL = "TOOL"
    BUILD = "BUILD"
    VERIFY = "VERIFY"
    PUSH = "PUSH"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Typed fields cover what an operator needs to diagnose a failed stage;
    anything else goes into ``metadata``. ``to_dict()`` drops unset fields.

    Attributes:
        service: Catalog service name
        stage: Pipeline stage (build, verify, push)
        image: Image reference being processed
        run_id: Pipeline run identifier
        exit_code: Exit code of the container tool, if it failed
        http_status: Last observed HTTP status during verification
        elapsed_seconds: Time spent in the failing operation
        log_tail: Captured instance or tool output
        metadata: Additional key-value pairs
    """

    service: str | None = None
    stage: str | None = None
    image: str | None = None
    run_id: str | None = None
    exit_code: int | None = None
    http_status: int | None = None
    elapsed_seconds: float | None = None
    log_tail: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Populated fields only, ``metadata`` flattened in."""
        result = {}
        for key in ["service", "stage", "image", "run_id", "exit_code",
                    "http_status", "elapsed_seconds", "log_tail"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ImageGateError(Exception):
    """
    Base exception for all imagegate errors.

    Subclasses set ``default_category``. Pass ``cause=`` to chain the
    underlying exception instead of swallowing it.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ImageGateError:
        """
        Set context fields and return ``self`` for chaining.

        Usage:
            raise PushError("push rejected").with_context(
                service="back", image="acme/back-universe:v1",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for log events and ``--json`` output."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigurationError(ImageGateError):
    """
    Bad operator input or settings.

    Always detected before any side effect.
    """

    default_category = ErrorCategory.CONFIG


class UnknownServiceError(ConfigurationError):
    """Service name not present in the catalog."""

    def __init__(self, name: str, available: list[str]):
        self.service_name = name
        self.available = list(available)
        super().__init__(
            f"Unknown service: {name!r}. Valid services: {', '.join(self.available)}"
        )


class ToolNotFoundError(ConfigurationError):
    """The container tool CLI is not installed or not on PATH."""


# =============================================================================
# TOOL ERRORS
# =============================================================================


class DockerCommandError(ImageGateError):
    """A ``docker`` invocation exited non-zero or timed out."""

    default_category = ErrorCategory.TOOL

    def __init__(
        self,
        message: str,
        *,
        args: list[str] | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.command_args = list(args or [])
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        if exit_code is not None:
            self.context.exit_code = exit_code


# =============================================================================
# STAGE ERRORS
# =============================================================================


class BuildError(ImageGateError):
    """Image build failed or the image-source descriptor is missing."""

    default_category = ErrorCategory.BUILD


class VerificationError(ImageGateError):
    """
    Base for verification failures.

    Carries the :class:`~imagegate.pipeline.results.VerificationOutcome`
    describing the failed attempt (elapsed time, last HTTP status, log
    excerpt) so the orchestrator can record it verbatim.
    """

    default_category = ErrorCategory.VERIFY

    def __init__(
        self,
        message: str,
        *,
        outcome: VerificationOutcome | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.outcome = outcome
        if outcome is not None:
            self.context.service = outcome.service
            self.context.image = outcome.image
            self.context.elapsed_seconds = outcome.elapsed_seconds
            self.context.http_status = outcome.last_http_status
            self.context.log_tail = outcome.log_excerpt or None


class PortUnavailableError(ImageGateError):
    """No free host port was found for an ephemeral instance."""

    default_category = ErrorCategory.VERIFY


class VerificationStartError(VerificationError):
    """The ephemeral instance could not be launched."""


class VerificationCrashError(VerificationError):
    """The ephemeral instance exited before it became healthy."""


class VerificationTimeoutError(VerificationError):
    """Health was not reached within the service's timeout."""


class PushError(ImageGateError):
    """Local image missing, or the registry rejected the push."""

    default_category = ErrorCategory.PUSH


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ImageGateError",
    "ConfigurationError",
    "UnknownServiceError",
    "ToolNotFoundError",
    "DockerCommandError",
    "BuildError",
    "VerificationError",
    "PortUnavailableError",
    "VerificationStartError",
    "VerificationCrashError",
    "VerificationTimeoutError",
    "PushError",
]
