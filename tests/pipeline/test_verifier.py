"""
Tests for the verification engine.

The docker CLI is a mock, health probes go through ``httpx.MockTransport``
and time comes from a fake clock, so every scenario runs instantly.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest
import structlog

from imagegate.core.errors import (
    DockerCommandError,
    PortUnavailableError,
    VerificationCrashError,
    VerificationStartError,
    VerificationTimeoutError,
)
from imagegate.pipeline import verifier as verifier_module
from imagegate.core.logging import LogContext
from imagegate.pipeline.catalog import CATALOG, ServiceSpec
from imagegate.pipeline.config import PipelineSettings
from imagegate.pipeline.ports import PortAllocator
from imagegate.pipeline.verifier import Verifier, cleanup_live_instances, install_cleanup_handlers

BACK = CATALOG.get("back")
UPLOADER = CATALOG.get("uploader")
IMAGE = "acme/back-universe:v1"


def _transport(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def _refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture
def make_verifier(settings, fake_docker, ports, clock):
    def factory(handler) -> Verifier:
        return Verifier(
            settings,
            fake_docker,
            ports=ports,
            client=_transport(handler),
            clock=clock,
            sleep=clock.sleep,
        )

    return factory


class TestHealthyPaths:
    def test_healthy_after_startup(self, make_verifier, fake_docker, clock, ports):
        def handler(request):
            if clock.now < 4:
                return _refused(request)
            return httpx.Response(200, text="pong")

        outcome = make_verifier(handler).verify(BACK, IMAGE, run_id="run123456")

        assert outcome.passed
        assert outcome.elapsed_seconds == 4
        assert outcome.last_http_status == 200
        assert outcome.instance_name == "verify-back-universe-run12345"
        assert not outcome.warning
        fake_docker.stop.assert_called_once_with(outcome.instance_name, timeout=10)
        fake_docker.remove.assert_called_once_with(outcome.instance_name)
        assert ports.held == frozenset()

    def test_launch_injects_bootstrap_env_and_port(self, make_verifier, fake_docker):
        outcome = make_verifier(lambda request: httpx.Response(200)).verify(BACK, IMAGE)

        kwargs = fake_docker.run_detached.call_args.kwargs
        assert kwargs["container_port"] == 8080
        assert kwargs["host_port"] == outcome.host_port
        assert kwargs["env"]["PLAY_URL"] == "http://localhost:3000"
        assert kwargs["labels"]["service"] == "back"

    def test_probes_loopback_health_path(self, make_verifier):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200)

        outcome = make_verifier(handler).verify(BACK, IMAGE)

        assert str(seen[0]) == f"http://127.0.0.1:{outcome.host_port}/ping"

    def test_presence_only_accepts_404(self, make_verifier):
        outcome = make_verifier(lambda request: httpx.Response(404)).verify(
            UPLOADER, "uploader-universe:v1"
        )

        assert outcome.passed
        assert outcome.last_http_status == 404
        assert outcome.elapsed_seconds == 0

    def test_presence_only_accepts_server_error(self, make_verifier):
        outcome = make_verifier(lambda request: httpx.Response(500)).verify(
            UPLOADER, "uploader-universe:v1"
        )
        assert outcome.passed


class TestFailures:
    def test_image_missing(self, make_verifier, fake_docker):
        fake_docker.image_exists.return_value = False

        with pytest.raises(VerificationStartError, match="build it first"):
            make_verifier(_refused).verify(BACK, IMAGE)

        fake_docker.run_detached.assert_not_called()

    def test_no_free_port_is_a_start_failure(self, settings, fake_docker, clock):
        exhausted = PortAllocator(40000, 40009, probe=lambda port: False, max_attempts=5)
        verifier = Verifier(
            settings,
            fake_docker,
            ports=exhausted,
            client=_transport(_refused),
            clock=clock,
            sleep=clock.sleep,
        )

        with pytest.raises(VerificationStartError, match="No free port") as exc_info:
            verifier.verify(BACK, IMAGE, run_id="run1")

        assert isinstance(exc_info.value.__cause__, PortUnavailableError)
        assert exc_info.value.context.stage == "verify"
        assert exc_info.value.outcome.host_port is None
        fake_docker.run_detached.assert_not_called()
        fake_docker.remove.assert_not_called()

    def test_launch_failure_removes_instance(self, make_verifier, fake_docker, ports):
        fake_docker.run_detached.side_effect = DockerCommandError(
            "docker run failed (exit 125)",
            args=["run"],
            exit_code=125,
            stderr="port is already allocated",
        )
        fake_docker.logs.return_value = ""

        with pytest.raises(VerificationStartError) as exc_info:
            make_verifier(_refused).verify(BACK, IMAGE)

        assert "port is already allocated" in exc_info.value.outcome.log_excerpt
        fake_docker.logs.assert_called_with(exc_info.value.outcome.instance_name, tail=20)
        fake_docker.remove.assert_called_once()
        assert ports.held == frozenset()

    def test_crash_before_healthy(self, make_verifier, fake_docker, clock):
        fake_docker.is_running.side_effect = [True, True, False]
        fake_docker.logs.return_value = "Error: SECRET_KEY missing\n"

        with pytest.raises(VerificationCrashError) as exc_info:
            make_verifier(_refused).verify(BACK, IMAGE)

        outcome = exc_info.value.outcome
        assert not outcome.passed
        assert outcome.elapsed_seconds == 4
        assert "SECRET_KEY missing" in outcome.log_excerpt
        fake_docker.logs.assert_called_with(outcome.instance_name, tail=30)
        fake_docker.remove.assert_called_once_with(outcome.instance_name)

    def test_not_running_at_deciding_poll_is_a_crash(self, make_verifier, fake_docker):
        # alive before the probe, gone right after a 200
        fake_docker.is_running.side_effect = [True, False]

        with pytest.raises(VerificationCrashError):
            make_verifier(lambda request: httpx.Response(200)).verify(BACK, IMAGE)

    def test_timeout(self, make_verifier, fake_docker, clock):
        fake_docker.logs.return_value = "booting\nstill booting\n"
        spec = ServiceSpec(name="slow", port=8080, health_timeout=20)

        with pytest.raises(VerificationTimeoutError) as exc_info:
            make_verifier(lambda request: httpx.Response(503)).verify(spec, "slow-universe:v1")

        outcome = exc_info.value.outcome
        assert outcome.elapsed_seconds == 20
        assert outcome.last_http_status == 503
        assert outcome.log_excerpt == "booting\nstill booting\n"
        assert exc_info.value.context.http_status == 503
        fake_docker.remove.assert_called_once()

    def test_standard_service_rejects_404(self, make_verifier):
        with pytest.raises(VerificationTimeoutError):
            make_verifier(lambda request: httpx.Response(404)).verify(BACK, IMAGE)

    def test_redirect_is_not_healthy(self, make_verifier):
        def handler(request):
            return httpx.Response(302, headers={"Location": "/login"})

        with pytest.raises(VerificationTimeoutError) as exc_info:
            make_verifier(handler).verify(BACK, IMAGE)

        assert exc_info.value.outcome.last_http_status == 302

    def test_elapsed_bounded_by_timeout_plus_interval(self, make_verifier, clock, settings):
        # every probe hangs for its full timeout before failing
        def handler(request):
            clock.advance(request.extensions["timeout"]["connect"])
            raise httpx.ConnectTimeout("timed out", request=request)

        start = clock.now
        with pytest.raises(VerificationTimeoutError) as exc_info:
            make_verifier(handler).verify(BACK, IMAGE)

        total = clock.now - start
        assert total <= BACK.health_timeout + settings.poll_interval
        assert exc_info.value.outcome.elapsed_seconds <= BACK.health_timeout + settings.poll_interval
        assert exc_info.value.outcome.last_http_status is None

    def test_stalled_request_is_abandoned_on_time(self, repo_root, fake_docker, ports):
        """Real clock: a health request that never answers cannot hold the loop."""
        released = threading.Event()

        def handler(request):
            released.wait(10)
            return httpx.Response(200)

        settings = PipelineSettings(repo_root=repo_root, poll_interval=0.1)
        spec = ServiceSpec(name="stuck", port=8080, health_timeout=1)
        verifier = Verifier(settings, fake_docker, ports=ports, client=_transport(handler))

        started = time.monotonic()
        try:
            with pytest.raises(VerificationTimeoutError) as exc_info:
                verifier.verify(spec, "stuck-universe:v1")
        finally:
            released.set()
            verifier.close()
        wall = time.monotonic() - started

        outcome = exc_info.value.outcome
        assert wall < 5
        assert 1 <= outcome.elapsed_seconds < 2
        assert outcome.last_http_status is None
        fake_docker.remove.assert_called_once()


class TestLogScan:
    def test_many_error_lines_warn_but_pass(self, make_verifier, fake_docker):
        fake_docker.logs.return_value = "\n".join(
            ["ready"] + [f"ERROR deprecated option {i}" for i in range(6)]
        )

        outcome = make_verifier(lambda request: httpx.Response(200)).verify(BACK, IMAGE)

        assert outcome.passed
        assert outcome.warning
        assert outcome.error_line_count == 6

    def test_few_error_lines_no_warning(self, make_verifier, fake_docker):
        fake_docker.logs.return_value = "fatal: one\nException two\ncrash three\nerror four\nError five\n"

        outcome = make_verifier(lambda request: httpx.Response(200)).verify(BACK, IMAGE)

        assert outcome.error_line_count == 5
        assert not outcome.warning


class TestCleanup:
    def test_skip_cleanup_leaves_passing_instance(self, make_verifier, fake_docker, ports):
        outcome = make_verifier(lambda request: httpx.Response(200)).verify(
            BACK, IMAGE, skip_cleanup=True
        )

        assert outcome.left_running
        assert outcome.host_port in ports.held
        fake_docker.stop.assert_not_called()
        fake_docker.remove.assert_not_called()
        assert outcome.instance_name not in verifier_module.live_instances()

    def test_skip_cleanup_still_removes_failures(self, make_verifier, fake_docker):
        fake_docker.is_running.return_value = False

        with pytest.raises(VerificationCrashError):
            make_verifier(_refused).verify(BACK, IMAGE, skip_cleanup=True)

        fake_docker.remove.assert_called_once()

    def test_interrupt_tears_down(self, make_verifier, fake_docker):
        def handler(request):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            make_verifier(handler).verify(BACK, IMAGE)

        fake_docker.remove.assert_called_once()
        assert verifier_module.live_instances() == []

    def test_cleanup_live_instances(self):
        docker = MagicMock()
        verifier_module._track("verify-play-universe-abc", docker)

        assert cleanup_live_instances() == ["verify-play-universe-abc"]
        docker.remove.assert_called_once_with("verify-play-universe-abc")
        assert verifier_module.live_instances() == []

    def test_install_cleanup_handlers_once(self, monkeypatch):
        monkeypatch.setattr(verifier_module, "_handlers_installed", False)
        with patch.object(verifier_module.atexit, "register") as register, \
                patch.object(verifier_module.signal, "signal") as set_handler:
            install_cleanup_handlers()
            install_cleanup_handlers()

        register.assert_called_once_with(cleanup_live_instances)
        set_handler.assert_called_once()


class TestVerifyMany:
    def test_mixed_results(self, make_verifier, fake_docker):
        fake_docker.is_running.side_effect = lambda name: "back" not in name

        results = make_verifier(lambda request: httpx.Response(404)).verify_many(
            [(BACK, IMAGE), (UPLOADER, "acme/uploader-universe:v1")]
        )

        assert list(results) == ["back", "uploader"]
        assert isinstance(results["back"], VerificationCrashError)
        assert results["uploader"].passed

    def test_parallel_instances_get_distinct_ports(self, make_verifier, fake_docker):
        specs = [ServiceSpec(name=f"svc{i}", port=8080) for i in range(12)]

        # passing instances keep their ports while left running
        results = make_verifier(lambda request: httpx.Response(200)).verify_many(
            [(spec, f"{spec.name}-universe:v1") for spec in specs], skip_cleanup=True
        )

        ports_used = [call.kwargs["host_port"] for call in fake_docker.run_detached.call_args_list]
        assert len(set(ports_used)) == 12
        assert all(outcome.passed for outcome in results.values())

    def test_workers_carry_log_context(self, make_verifier, fake_docker):
        seen = {}

        def run_detached(image, *, labels, **kwargs):
            seen[labels["service"]] = structlog.contextvars.get_contextvars()
            return "0123456789ab"

        fake_docker.run_detached.side_effect = run_detached

        with LogContext(command="verify"):
            make_verifier(lambda request: httpx.Response(200)).verify_many(
                [(BACK, IMAGE), (UPLOADER, "acme/uploader-universe:v1")], run_id="run1"
            )
            caller = structlog.contextvars.get_contextvars()

        for service in ("back", "uploader"):
            assert seen[service]["command"] == "verify"
            assert seen[service]["run_id"] == "run1"
            assert seen[service]["service"] == service
        assert "service" not in caller

    def test_empty(self, make_verifier):
        assert make_verifier(_refused).verify_many([]) == {}
