"""Pipeline orchestrator for imagegate.

Runs Build → Verify → Push for each selected service and records the
result of every stage in a :class:`~imagegate.pipeline.results.RunResult`.

Architecture:
    ::

        Orchestrator.run(PipelineRun)
          │
          ├─ select services (UnknownServiceError before any side effect)
          ├─ preflight: docker CLI present if any stage needs it
          │
          └─ for each service, in catalog order:
               BUILD  ── disabled ──► skipped(reason)
                 │ success / skipped
               VERIFY ── disabled ──► skipped(reason)
                 │ success / skipped
               PUSH   ── disabled ──► skipped(reason)
               │
               failure ──► stage = failure(detail); later stages stay pending
                           fail_fast: abort, later services stay pending

Key Concepts:
    Gating: a stage runs only when the previous stage of the same service
        succeeded or was skipped. A skipped Build means Verify targets the
        pre-existing image; a skipped Verify lets Push go ahead.
    Stage enablement: read from ``PipelineRun.build_enabled`` /
        ``verify_enabled`` / ``push_enabled`` and nothing else.
    Fail-fast: the ``deploy`` command aborts on the first failure. The
        single-stage commands run with ``fail_fast=False`` so every
        selected service is attempted and every failure is listed.

Tags:
    orchestration, pipeline, gating, fail-fast, state-machine
"""

from __future__ import annotations

from typing import Any

from imagegate.core.errors import ImageGateError, VerificationError
from imagegate.core.logging import LogContext, get_logger
from imagegate.pipeline.builder import Builder
from imagegate.pipeline.catalog import CATALOG, ServiceRegistry, ServiceSpec
from imagegate.pipeline.config import PipelineRun, PipelineSettings, Stage
from imagegate.pipeline.docker import DockerCli
from imagegate.pipeline.pusher import Pusher
from imagegate.pipeline.results import (
    BuildOutcome,
    PushOutcome,
    RunResult,
    ServiceRecord,
    VerificationOutcome,
)
from imagegate.pipeline.verifier import Verifier

logger = get_logger(__name__)


class Orchestrator:
    """Drives the Build → Verify → Push state machine.

    Parameters
    ----------
    settings
        Process-wide settings.
    registry
        Service catalog to select from.
    docker
        Shared CLI wrapper. Created during preflight when a stage needs it.
    builder, verifier, pusher
        Component overrides. Built from ``settings`` when omitted.

    Example::

        with Orchestrator(PipelineSettings.from_env()) as orchestrator:
            result = orchestrator.run(PipelineRun(version="v1.2.3", namespace="acme"))
        result.overall_status
        <OverallStatus.PASSED: 'PASSED'>
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        registry: ServiceRegistry = CATALOG,
        docker: DockerCli | None = None,
        builder: Builder | None = None,
        verifier: Verifier | None = None,
        pusher: Pusher | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self._docker = docker
        self._builder = builder
        self._verifier = verifier
        self._pusher = pusher

    def close(self) -> None:
        if self._verifier is not None:
            self._verifier.close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, run: PipelineRun, *, parallel_verify: bool = False) -> RunResult:
        """Execute the pipeline for the selected services.

        Parameters
        ----------
        run
            Frozen run options with derived stage enablement.
        parallel_verify
            Verify all services concurrently. Only applies when Verify is
            the sole enabled stage.

        Returns
        -------
        RunResult
            Completed result (``mark_complete()`` already called).

        Raises
        ------
        ConfigurationError
            Unknown service or missing container tool. Raised before any
            side effect.
        """
        specs = self.registry.select(run.service)
        self._preflight(run)

        result = RunResult(
            run_id=run.run_id,
            version=run.version,
            namespace=run.namespace,
            dry_run=run.dry_run,
            services=[ServiceRecord(service=spec.name) for spec in specs],
        )

        with LogContext(run_id=run.run_id):
            logger.info(
                "pipeline.started",
                services=[spec.name for spec in specs],
                version=run.version,
                stages=[stage.value for stage in run.enabled_stages()],
                dry_run=run.dry_run,
            )
            if parallel_verify and run.enabled_stages() == [Stage.VERIFY]:
                self._verify_parallel(specs, run, result)
            else:
                for index, spec in enumerate(specs):
                    ok = self._run_service(spec, run, result.record_for(spec.name))
                    if not ok and run.fail_fast:
                        remaining = [s.name for s in specs[index + 1:]]
                        if remaining:
                            result.aborted = True
                        logger.error("pipeline.aborted", failed=spec.name, not_attempted=remaining)
                        break

            result.mark_complete()
            logger.info(
                "pipeline.complete",
                status=result.overall_status.value,
                summary=result.summary,
            )
        return result

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def docker(self) -> DockerCli:
        if self._docker is None:
            self._docker = DockerCli(self.settings.docker_binary)
        return self._docker

    def builder(self, run: PipelineRun) -> Builder:
        if self._builder is None:
            # dry-run planning does not need the container tool
            return Builder(self.settings, self._docker, params=run.build_params)
        return self._builder

    @property
    def verifier(self) -> Verifier:
        if self._verifier is None:
            self._verifier = Verifier(self.settings, self.docker)
        return self._verifier

    @property
    def pusher(self) -> Pusher:
        if self._pusher is None:
            self._pusher = Pusher(self.settings, self.docker)
        return self._pusher

    def _preflight(self, run: PipelineRun) -> None:
        needs_docker = (
            (run.build_enabled and not run.dry_run and self._builder is None)
            or (run.verify_enabled and self._verifier is None)
            or (run.push_enabled and self._pusher is None)
        )
        if needs_docker:
            _ = self.docker

    # ------------------------------------------------------------------
    # Per-service state machine
    # ------------------------------------------------------------------

    def _run_service(self, spec: ServiceSpec, run: PipelineRun, record: ServiceRecord) -> bool:
        """Run every stage for one service. False when a stage failed."""
        image = spec.image_ref(run.version, run.namespace)
        previous = None
        with LogContext(service=spec.name):
            for stage in Stage:
                stage_record = record.stage(stage)
                if previous is not None and not previous.passed_gate:
                    return False
                previous = stage_record

                if not run.stage_enabled(stage):
                    reason = run.skip_reasons.get(stage.value, "disabled")
                    stage_record.skip(reason)
                    logger.info("stage.skipped", stage=stage.value, reason=reason)
                    continue

                try:
                    outcome = self._execute(stage, spec, run, image)
                except ImageGateError as exc:
                    failed_outcome = exc.outcome if isinstance(exc, VerificationError) else None
                    stage_record.fail(exc.message, outcome=failed_outcome, error=exc.to_dict())
                    logger.error(
                        "stage.failed",
                        stage=stage.value,
                        error_type=type(exc).__name__,
                        error=exc.message,
                    )
                    return False
                stage_record.succeed(outcome)
                logger.info("stage.succeeded", stage=stage.value)
        return True

    def _execute(
        self,
        stage: Stage,
        spec: ServiceSpec,
        run: PipelineRun,
        image: str,
    ) -> BuildOutcome | VerificationOutcome | PushOutcome:
        if stage is Stage.BUILD:
            return self.builder(run).build(spec, run.version, run.namespace, dry_run=run.dry_run)
        if stage is Stage.VERIFY:
            return self.verifier.verify(
                spec, image, run_id=run.run_id, skip_cleanup=run.skip_cleanup,
            )
        return self.pusher.push(spec, run.version, run.namespace)

    def _verify_parallel(
        self,
        specs: list[ServiceSpec],
        run: PipelineRun,
        result: RunResult,
    ) -> None:
        targets = [(spec, spec.image_ref(run.version, run.namespace)) for spec in specs]
        outcomes = self.verifier.verify_many(
            targets, run_id=run.run_id, skip_cleanup=run.skip_cleanup,
        )
        for spec in specs:
            record = result.record_for(spec.name)
            for stage in (Stage.BUILD, Stage.PUSH):
                record.stage(stage).skip(run.skip_reasons.get(stage.value, "disabled"))
            verdict = outcomes[spec.name]
            if isinstance(verdict, ImageGateError):
                failed_outcome = verdict.outcome if isinstance(verdict, VerificationError) else None
                record.stage(Stage.VERIFY).fail(
                    verdict.message, outcome=failed_outcome, error=verdict.to_dict(),
                )
                logger.error("stage.failed", service=spec.name, stage="verify", error=verdict.message)
            else:
                record.stage(Stage.VERIFY).succeed(verdict)
