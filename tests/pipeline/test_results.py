"""
Tests for outcome models and the per-run stage record.
"""

from __future__ import annotations

import json

import pytest

from imagegate.pipeline.config import Stage
from imagegate.pipeline.results import (
    BuildOutcome,
    OverallStatus,
    PushOutcome,
    RunResult,
    ServiceRecord,
    StageRecord,
    StageStatus,
    VerificationOutcome,
)


class TestStageRecord:
    def test_starts_pending(self):
        record = StageRecord(stage=Stage.BUILD)
        assert record.status is StageStatus.PENDING
        assert not record.passed_gate

    def test_success_and_skip_pass_the_gate(self):
        ok = StageRecord(stage=Stage.BUILD)
        ok.succeed(BuildOutcome(service="play", image="play-universe:v1", success=True))
        skipped = StageRecord(stage=Stage.VERIFY)
        skipped.skip("skipped by operator")

        assert ok.passed_gate
        assert skipped.passed_gate
        assert skipped.detail == "skipped by operator"

    def test_failure_blocks_the_gate(self):
        record = StageRecord(stage=Stage.VERIFY)
        record.fail("timed out", error={"error_type": "VerificationTimeoutError"})

        assert not record.passed_gate
        assert record.detail == "timed out"

    def test_resolves_only_once(self):
        record = StageRecord(stage=Stage.PUSH)
        record.skip("dry-run")
        with pytest.raises(RuntimeError, match="already resolved"):
            record.fail("late failure")


class TestServiceRecord:
    def test_one_record_per_stage(self):
        record = ServiceRecord(service="back")
        assert [r.stage for r in record.stages] == [Stage.BUILD, Stage.VERIFY, Stage.PUSH]

    def test_failed_stage(self):
        record = ServiceRecord(service="back")
        record.stage(Stage.BUILD).succeed(BuildOutcome(service="back", image="x", success=True))
        record.stage(Stage.VERIFY).fail("crashed")

        assert record.failed
        assert record.failed_stage.stage is Stage.VERIFY


def _result(*services: str) -> RunResult:
    return RunResult(
        run_id="run1",
        version="v1",
        services=[ServiceRecord(service=name) for name in services],
    )


def _complete(record: ServiceRecord) -> None:
    for stage in Stage:
        record.stage(stage).skip("not needed")


class TestRunResult:
    def test_mark_complete_passed(self):
        result = _result("play", "back")
        for record in result.services:
            _complete(record)

        result.mark_complete()

        assert result.overall_status is OverallStatus.PASSED
        assert result.success
        assert result.completed_at is not None
        assert result.summary.startswith("2/2 services PASSED")

    def test_mark_complete_failed_lists_services(self):
        result = _result("play", "back")
        _complete(result.record_for("play"))
        result.record_for("back").stage(Stage.BUILD).fail("exit 1")

        result.mark_complete()

        assert result.overall_status is OverallStatus.FAILED
        assert result.failed_services == ["back"]
        assert "(failed: back)" in result.summary

    def test_mark_complete_aborted(self):
        result = _result("play", "back")
        result.record_for("play").stage(Stage.BUILD).fail("exit 1")
        result.aborted = True

        result.mark_complete()

        assert result.overall_status is OverallStatus.ABORTED
        assert result.summary.startswith("0/2")

    def test_json_round_trip_keeps_outcome_types(self):
        result = _result("uploader")
        record = result.record_for("uploader")
        record.stage(Stage.BUILD).skip("skipped by operator")
        record.stage(Stage.VERIFY).succeed(
            VerificationOutcome(service="uploader", image="u", passed=True, last_http_status=404)
        )
        record.stage(Stage.PUSH).succeed(
            PushOutcome(service="uploader", image="u", success=True, floating_pushed=False)
        )
        result.mark_complete()

        payload = json.loads(result.model_dump_json())
        restored = RunResult.model_validate(payload)

        restored_record = restored.record_for("uploader")
        assert isinstance(restored_record.stage(Stage.VERIFY).outcome, VerificationOutcome)
        assert isinstance(restored_record.stage(Stage.PUSH).outcome, PushOutcome)
        assert payload["services"][0]["stages"][1]["outcome"]["last_http_status"] == 404
