"""Result models for imagegate.

Pydantic v2 models capturing the outcome of every stage of a pipeline
run. Component outcomes (build, verification, push) hang off a per-stage
record; stage records roll up into a per-service record, and those roll
up into the run result the CLI prints and serialises.

Key Concepts:
    BuildOutcome / VerificationOutcome / PushOutcome: What one component
        produced for one service. Discriminated by ``kind``.
    StageRecord: Tagged variant over {build, verify, push} x
        {pending, success, failure(detail), skipped(reason)}. The
        orchestrator moves a record out of ``pending`` exactly once.
    ServiceRecord: The three stage records of one service.
    RunResult: All service records plus run metadata. ``mark_complete()``
        finalises timestamps, duration, overall status and summary.

Architecture Decisions:
    - Explicit per-stage records instead of shared boolean flags: gating
      reads ``StageRecord.passed_gate`` and nothing else.
    - ``model_dump_json(indent=2)`` backs the CLI ``--json`` output.

Tags:
    results, outcomes, pydantic, stage-record, summary
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from imagegate.pipeline.config import Stage


class OverallStatus(str, Enum):
    """Overall status of a pipeline run."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"  # fail-fast stopped the run before every service was processed
    PENDING = "PENDING"


class StageStatus(str, Enum):
    """Status of one stage for one service."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Component outcomes
# ---------------------------------------------------------------------------


class BuildOutcome(BaseModel):
    """Result of building (or planning) one service image."""

    kind: Literal["build"] = "build"
    service: str
    image: str
    success: bool = False
    dry_run: bool = False
    descriptor: str | None = None
    platform: str | None = None
    build_params: dict[str, str] = Field(default_factory=dict)
    duration_seconds: float = 0.0
    detail: str | None = None


class VerificationOutcome(BaseModel):
    """Result of verifying one image through an ephemeral instance."""

    kind: Literal["verify"] = "verify"
    service: str
    image: str
    passed: bool = False
    elapsed_seconds: float = 0.0
    last_http_status: int | None = None
    log_excerpt: str = ""
    warning: bool = False
    error_line_count: int = 0
    instance_name: str | None = None
    host_port: int | None = None
    left_running: bool = False
    detail: str | None = None


class PushOutcome(BaseModel):
    """Result of publishing one image."""

    kind: Literal["push"] = "push"
    service: str
    image: str
    success: bool = False
    floating_image: str | None = None
    floating_pushed: bool | None = None
    """None when no floating republish was attempted."""
    warning: str | None = None
    detail: str | None = None


Outcome = Annotated[
    BuildOutcome | VerificationOutcome | PushOutcome,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Per-run record
# ---------------------------------------------------------------------------


class StageRecord(BaseModel):
    """State of one stage for one service."""

    stage: Stage
    status: StageStatus = StageStatus.PENDING
    detail: str | None = None
    error: dict[str, Any] | None = None
    outcome: Outcome | None = None

    def succeed(self, outcome: BuildOutcome | VerificationOutcome | PushOutcome) -> None:
        self._leave_pending()
        self.status = StageStatus.SUCCESS
        self.outcome = outcome

    def fail(
        self,
        detail: str,
        *,
        outcome: BuildOutcome | VerificationOutcome | PushOutcome | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        self._leave_pending()
        self.status = StageStatus.FAILURE
        self.detail = detail
        self.outcome = outcome
        self.error = error

    def skip(self, reason: str) -> None:
        self._leave_pending()
        self.status = StageStatus.SKIPPED
        self.detail = reason

    @property
    def passed_gate(self) -> bool:
        """True when the next stage of this service may run."""
        return self.status in (StageStatus.SUCCESS, StageStatus.SKIPPED)

    def _leave_pending(self) -> None:
        if self.status is not StageStatus.PENDING:
            raise RuntimeError(
                f"stage {self.stage.value} already resolved as {self.status.value}"
            )


class ServiceRecord(BaseModel):
    """All stage records for one service."""

    service: str
    stages: list[StageRecord] = Field(
        default_factory=lambda: [StageRecord(stage=stage) for stage in Stage]
    )

    def stage(self, stage: Stage) -> StageRecord:
        for record in self.stages:
            if record.stage == stage:
                return record
        raise KeyError(stage)

    @property
    def failed(self) -> bool:
        return any(r.status is StageStatus.FAILURE for r in self.stages)

    @property
    def failed_stage(self) -> StageRecord | None:
        return next((r for r in self.stages if r.status is StageStatus.FAILURE), None)


class RunResult(BaseModel):
    """Result of a full pipeline run."""

    run_id: str
    version: str
    namespace: str | None = None
    dry_run: bool = False
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    services: list[ServiceRecord] = Field(default_factory=list)
    aborted: bool = False
    overall_status: OverallStatus = OverallStatus.PENDING
    summary: str = ""

    def record_for(self, service: str) -> ServiceRecord:
        for record in self.services:
            if record.service == service:
                return record
        raise KeyError(service)

    @property
    def failed_services(self) -> list[str]:
        return [r.service for r in self.services if r.failed]

    @property
    def success(self) -> bool:
        return self.overall_status is OverallStatus.PASSED

    def mark_complete(self) -> None:
        """Finalize run: compute duration, overall status and summary."""
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()

        failed = self.failed_services
        if self.aborted:
            self.overall_status = OverallStatus.ABORTED
        elif failed:
            self.overall_status = OverallStatus.FAILED
        else:
            self.overall_status = OverallStatus.PASSED

        ok = sum(1 for r in self.services if not r.failed and all(
            s.status is not StageStatus.PENDING for s in r.stages
        ))
        self.summary = (
            f"{ok}/{len(self.services)} services {self.overall_status.value} "
            f"in {self.duration_seconds:.1f}s"
        )
        if failed:
            self.summary += f" (failed: {', '.join(failed)})"
