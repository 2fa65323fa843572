"""Verification engine for imagegate.

Proves an already-built image starts and serves HTTP before anything is
published. Each verification launches one short-lived ("ephemeral")
instance of the image on a random host port, polls it until it is
healthy, crashes, or runs out of time, and then tears it down.

Why This Matters:
    A registry push is hard to take back. An image that builds cleanly
    can still crash on start (missing environment, bad entrypoint, broken
    dependency). Verification gates Push on the image actually answering
    HTTP from a clean container.

Architecture:
    ::

        verify(spec, image)
          │
          ├─ image_exists? ── no ──► VerificationStartError ("build first")
          ├─ PortAllocator.acquire()
          ├─ docker run --detach ... ── fails ──► VerificationStartError (20-line tail)
          │
          └─ poll every interval, until health_timeout:
               ├─ still running? ── no ──► VerificationCrashError (30-line tail)
               ├─ GET http://127.0.0.1:<port><path>
               │     standard:       2xx            ─┐
               │     presence-only:  any status     ─┴─► re-check running ─► passed
               └─ out of time ──► VerificationTimeoutError (full log)
          │
          finally: stop + rm + release port
                   (left running only when passed and skip_cleanup)

Key Concepts:
    Verifier: Runs one verification (``verify``) or several concurrently
        (``verify_many``).
    Log scan: After a pass, log lines matching ``error|fatal|exception|
        crash`` are counted; more than five attaches a warning. The scan
        never changes the verdict.
    Live instance tracking: ``install_cleanup_handlers()`` removes every
        still-tracked instance on interpreter exit or SIGTERM.

Architecture Decisions:
    - Bounded wait: the sleep is clipped to the remaining budget and each
      health request gets a wall-clock deadline of at most one interval,
      so total wait stays within ``timeout + interval`` even when a
      request stalls.
    - Clock, sleep and HTTP client are injectable; tests drive the loop
      with a fake clock and ``httpx.MockTransport``.
    - Redirects are not followed: a redirect is not a healthy answer.

Tags:
    verification, health-check, ephemeral, polling, httpx, cleanup
"""

from __future__ import annotations

import atexit
import contextvars
import re
import signal
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

import httpx

from imagegate.core.errors import (
    DockerCommandError,
    ImageGateError,
    PortUnavailableError,
    VerificationCrashError,
    VerificationStartError,
    VerificationTimeoutError,
)
from imagegate.core.logging import LogContext, get_logger
from imagegate.pipeline.catalog import ServiceSpec
from imagegate.pipeline.config import PipelineSettings
from imagegate.pipeline.docker import DockerCli, tail_lines
from imagegate.pipeline.ports import PortAllocator
from imagegate.pipeline.results import VerificationOutcome

logger = get_logger(__name__)

ERROR_KEYWORDS = re.compile(r"error|fatal|exception|crash", re.IGNORECASE)
ERROR_LINE_THRESHOLD = 5
START_FAILURE_TAIL = 20
MIN_REQUEST_DEADLINE = 0.05


# ---------------------------------------------------------------------------
# Live instance tracking
# ---------------------------------------------------------------------------

_live_instances: dict[str, DockerCli] = {}
_live_lock = threading.Lock()
_handlers_installed = False


def _track(name: str, docker: DockerCli) -> None:
    with _live_lock:
        _live_instances[name] = docker


def _untrack(name: str) -> None:
    with _live_lock:
        _live_instances.pop(name, None)


def live_instances() -> list[str]:
    with _live_lock:
        return list(_live_instances)


def cleanup_live_instances() -> list[str]:
    """Remove every tracked ephemeral instance. Best-effort."""
    with _live_lock:
        pending = list(_live_instances.items())
        _live_instances.clear()
    removed = []
    for name, docker in pending:
        try:
            docker.remove(name)
        except ImageGateError as exc:
            logger.warning("verify.cleanup_failed", instance=name, error=str(exc))
            continue
        removed.append(name)
    if removed:
        logger.info("verify.cleanup", instances=removed)
    return removed


def _handle_sigterm(signum: int, frame: object) -> None:
    cleanup_live_instances()
    raise SystemExit(128 + signum)


def install_cleanup_handlers() -> None:
    """Register atexit and SIGTERM cleanup of tracked instances (idempotent)."""
    global _handlers_installed
    if _handlers_installed:
        return
    atexit.register(cleanup_live_instances)
    # Signal handlers (only in main thread)
    try:
        signal.signal(signal.SIGTERM, _handle_sigterm)
    except (ValueError, OSError):
        logger.debug("verify.sigterm_handler_skipped")
    _handlers_installed = True


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class Verifier:
    """Health gate for built images.

    Parameters
    ----------
    settings
        Poll interval, port range, stop grace period, log tail size.
    docker
        CLI wrapper (created from ``settings.docker_binary`` if omitted).
    ports
        Shared allocator; one is created from ``settings.port_range``.
    client
        HTTP client for health probes.
    clock, sleep
        Time source and sleep function.

    Example::

        verifier = Verifier(PipelineSettings())
        outcome = verifier.verify(CATALOG.get("back"), "acme/back-universe:v1")
        outcome.elapsed_seconds
        4.1
    """

    def __init__(
        self,
        settings: PipelineSettings,
        docker: DockerCli | None = None,
        *,
        ports: PortAllocator | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.docker = docker or DockerCli(settings.docker_binary)
        self.ports = ports or PortAllocator(*settings.port_range)
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=False)
        self._clock = clock
        self._sleep = sleep
        # health requests run here so a stalled one can be abandoned on time
        self._requests = ThreadPoolExecutor(thread_name_prefix="imagegate-health")

    def close(self) -> None:
        self._requests.shutdown(wait=False, cancel_futures=True)
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> Verifier:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def verify(
        self,
        spec: ServiceSpec,
        image: str,
        *,
        run_id: str | None = None,
        skip_cleanup: bool = False,
    ) -> VerificationOutcome:
        """Verify that ``image`` starts and answers its health check.

        Parameters
        ----------
        spec
            Catalog entry (port, health path, presence-only, timeout,
            bootstrap env).
        image
            Local image reference.
        run_id
            Pipeline run id, used for the instance name and labels.
        skip_cleanup
            Leave a passing instance running and report its name and port.

        Returns
        -------
        VerificationOutcome
            Passed outcome, possibly carrying an advisory log warning.

        Raises
        ------
        VerificationStartError
            Image missing locally, no free host port, or the instance
            failed to launch.
        VerificationCrashError
            The instance stopped before (or right after) becoming healthy.
        VerificationTimeoutError
            No healthy answer within ``spec.health_timeout`` seconds.
        """
        outcome = VerificationOutcome(service=spec.name, image=image)

        if not self.docker.image_exists(image):
            outcome.detail = f"Image not found locally: {image} (build it first)"
            logger.error("verify.image_missing", service=spec.name, image=image)
            raise VerificationStartError(outcome.detail, outcome=outcome).with_context(
                stage="verify", run_id=run_id,
            )

        suffix = (run_id or uuid.uuid4().hex)[:8]
        name = f"verify-{spec.repository}-{suffix}"
        try:
            port = self.ports.acquire()
        except PortUnavailableError as exc:
            outcome.detail = f"No host port available for {name}: {exc.message}"
            logger.error("verify.no_port", service=spec.name, error=exc.message)
            raise VerificationStartError(outcome.detail, outcome=outcome, cause=exc).with_context(
                stage="verify", run_id=run_id,
            ) from exc
        outcome.instance_name = name
        outcome.host_port = port

        passed = False
        try:
            self._launch(spec, image, name, port, outcome, run_id)
            self._await_health(spec, name, port, outcome, run_id)
            self._scan_logs(spec, name, outcome)
            passed = outcome.passed = True
            logger.info(
                "verify.passed",
                service=spec.name,
                elapsed=round(outcome.elapsed_seconds, 1),
                status=outcome.last_http_status,
                warning=outcome.warning,
            )
        finally:
            if passed and skip_cleanup:
                outcome.left_running = True
                _untrack(name)
                logger.info("verify.left_running", service=spec.name, instance=name, host_port=port)
            else:
                self._teardown(name, port)
        return outcome

    def verify_many(
        self,
        targets: Sequence[tuple[ServiceSpec, str]],
        *,
        run_id: str | None = None,
        skip_cleanup: bool = False,
        max_workers: int | None = None,
    ) -> dict[str, VerificationOutcome | ImageGateError]:
        """Verify several images concurrently.

        Returns a mapping of service name to its outcome or the error that
        failed it, in ``targets`` order. Worker threads inherit the
        caller's log context and add ``service``.
        """
        if not targets:
            return {}
        workers = max_workers or len(targets)
        results: dict[str, VerificationOutcome | ImageGateError] = {}
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                spec.name: pool.submit(
                    contextvars.copy_context().run,
                    self._verify_in_context,
                    spec,
                    image,
                    run_id=run_id,
                    skip_cleanup=skip_cleanup,
                )
                for spec, image in targets
            }
            for service, future in futures.items():
                try:
                    results[service] = future.result()
                except ImageGateError as exc:
                    results[service] = exc
        return results

    def _verify_in_context(
        self,
        spec: ServiceSpec,
        image: str,
        *,
        run_id: str | None,
        skip_cleanup: bool,
    ) -> VerificationOutcome:
        with LogContext(run_id=run_id, service=spec.name):
            return self.verify(spec, image, run_id=run_id, skip_cleanup=skip_cleanup)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _launch(
        self,
        spec: ServiceSpec,
        image: str,
        name: str,
        port: int,
        outcome: VerificationOutcome,
        run_id: str | None,
    ) -> None:
        _track(name, self.docker)
        logger.info("verify.starting", service=spec.name, instance=name, host_port=port)
        try:
            self.docker.run_detached(
                image,
                name=name,
                host_port=port,
                container_port=spec.port,
                env=spec.bootstrap_env,
                labels={"run_id": run_id or "", "service": spec.name, "type": "verify"},
            )
        except DockerCommandError as exc:
            logs = self.docker.logs(name, tail=START_FAILURE_TAIL)
            outcome.log_excerpt = tail_lines(logs or exc.stderr, START_FAILURE_TAIL)
            outcome.detail = f"Instance {name} failed to start: {exc.message}"
            logger.error("verify.start_failed", service=spec.name, exit_code=exc.exit_code)
            raise VerificationStartError(outcome.detail, outcome=outcome, cause=exc).with_context(
                stage="verify", run_id=run_id,
            ) from exc

    def _await_health(
        self,
        spec: ServiceSpec,
        name: str,
        port: int,
        outcome: VerificationOutcome,
        run_id: str | None,
    ) -> None:
        interval = self.settings.poll_interval
        url = f"http://127.0.0.1:{port}{spec.health_path}"
        start = self._clock()

        while True:
            if not self.docker.is_running(name):
                self._crashed(spec, name, outcome, start, run_id)

            budget = spec.health_timeout + interval - (self._clock() - start)
            status = self._probe(url, timeout=max(min(interval, budget), MIN_REQUEST_DEADLINE))
            if status is not None:
                outcome.last_http_status = status
            elapsed = self._clock() - start
            logger.debug("verify.poll", service=spec.name, elapsed=round(elapsed, 1), status=status)

            if self._is_healthy(spec, status):
                # the answer only counts if the instance survived it
                if not self.docker.is_running(name):
                    self._crashed(spec, name, outcome, start, run_id)
                outcome.elapsed_seconds = self._clock() - start
                return

            if elapsed >= spec.health_timeout:
                outcome.elapsed_seconds = elapsed
                outcome.log_excerpt = self.docker.logs(name)
                outcome.detail = (
                    f"{spec.name} not healthy after {elapsed:.1f}s "
                    f"(last HTTP status: {outcome.last_http_status or 'none'})"
                )
                logger.error(
                    "verify.timeout",
                    service=spec.name,
                    elapsed=round(elapsed, 1),
                    status=outcome.last_http_status,
                )
                raise VerificationTimeoutError(outcome.detail, outcome=outcome).with_context(
                    stage="verify", run_id=run_id, url=url,
                )

            self._sleep(min(interval, spec.health_timeout - elapsed))

    def _crashed(
        self,
        spec: ServiceSpec,
        name: str,
        outcome: VerificationOutcome,
        start: float,
        run_id: str | None,
    ) -> None:
        outcome.elapsed_seconds = self._clock() - start
        outcome.log_excerpt = self.docker.logs(name, tail=self.settings.log_tail_lines)
        outcome.detail = f"Instance {name} stopped before becoming healthy"
        logger.error("verify.crashed", service=spec.name, elapsed=round(outcome.elapsed_seconds, 1))
        raise VerificationCrashError(outcome.detail, outcome=outcome).with_context(
            stage="verify", run_id=run_id,
        )

    def _probe(self, url: str, timeout: float) -> int | None:
        """HTTP status of one health request.

        None on transport failure or when no answer arrives within
        ``timeout`` seconds of wall time. httpx applies its timeout per
        phase, so a server trickling bytes could hold the request longer;
        the abandoned request finishes in the background once teardown
        stops the instance.
        """
        future = self._requests.submit(
            self._client.get, url, timeout=timeout, follow_redirects=False,
        )
        try:
            response = future.result(timeout=timeout)
        except FutureTimeoutError:
            return None
        except httpx.TransportError:
            return None
        return response.status_code

    @staticmethod
    def _is_healthy(spec: ServiceSpec, status: int | None) -> bool:
        if status is None:
            return False
        if spec.presence_only:
            return True
        return 200 <= status < 300

    def _scan_logs(self, spec: ServiceSpec, name: str, outcome: VerificationOutcome) -> None:
        logs = self.docker.logs(name)
        count = sum(1 for line in logs.splitlines() if ERROR_KEYWORDS.search(line))
        outcome.error_line_count = count
        if count > ERROR_LINE_THRESHOLD:
            outcome.warning = True
            outcome.log_excerpt = tail_lines(logs, START_FAILURE_TAIL)
            logger.warning("verify.log_errors", service=spec.name, error_lines=count)

    def _teardown(self, name: str, port: int) -> None:
        try:
            self.docker.stop(name, timeout=self.settings.stop_timeout)
            self.docker.remove(name)
        finally:
            _untrack(name)
            self.ports.release(port)
