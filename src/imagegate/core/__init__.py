"""
Core primitives shared by every imagegate component.

Provides the typed error taxonomy (:mod:`imagegate.core.errors`) and the
structlog configuration (:mod:`imagegate.core.logging`).
"""

from imagegate.core.errors import (
    BuildError,
    ConfigurationError,
    DockerCommandError,
    ErrorCategory,
    ErrorContext,
    ImageGateError,
    PortUnavailableError,
    PushError,
    ToolNotFoundError,
    UnknownServiceError,
    VerificationCrashError,
    VerificationError,
    VerificationStartError,
    VerificationTimeoutError,
)
from imagegate.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

__all__ = [
    "BuildError",
    "ConfigurationError",
    "DockerCommandError",
    "ErrorCategory",
    "ErrorContext",
    "ImageGateError",
    "LogContext",
    "PortUnavailableError",
    "PushError",
    "ToolNotFoundError",
    "UnknownServiceError",
    "VerificationCrashError",
    "VerificationError",
    "VerificationStartError",
    "VerificationTimeoutError",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
