"""
Build → Verify → Push pipeline for catalog services.

Builds container images, proves each one starts and answers HTTP in an
ephemeral instance, and only then publishes it to the registry.

Modules:
    catalog       ServiceSpec and the immutable service registry
    config        PipelineSettings and PipelineRun (stage enablement)
    results       Outcome models and the per-run stage record
    docker        docker CLI adapter
    ports         Randomized host-port allocation
    builder       Image builds and dry-run plans
    verifier      Ephemeral-instance health gate
    pusher        Registry publish with floating tag
    orchestrator  Stage sequencing with fail-fast gating
"""

from imagegate.pipeline.builder import Builder, BuildPlan, build_params_from_env
from imagegate.pipeline.catalog import CATALOG, LINEAGE, ServiceRegistry, ServiceSpec
from imagegate.pipeline.config import PipelineRun, PipelineSettings, Stage
from imagegate.pipeline.docker import DockerCli
from imagegate.pipeline.orchestrator import Orchestrator
from imagegate.pipeline.ports import PortAllocator
from imagegate.pipeline.pusher import PendingPush, Pusher
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
from imagegate.pipeline.verifier import Verifier, cleanup_live_instances, install_cleanup_handlers

__all__ = [
    "BuildOutcome",
    "BuildPlan",
    "Builder",
    "CATALOG",
    "DockerCli",
    "LINEAGE",
    "Orchestrator",
    "OverallStatus",
    "PendingPush",
    "PipelineRun",
    "PipelineSettings",
    "PortAllocator",
    "PushOutcome",
    "Pusher",
    "RunResult",
    "ServiceRecord",
    "ServiceRegistry",
    "ServiceSpec",
    "Stage",
    "StageRecord",
    "StageStatus",
    "VerificationOutcome",
    "Verifier",
    "build_params_from_env",
    "cleanup_live_instances",
    "install_cleanup_handlers",
]
