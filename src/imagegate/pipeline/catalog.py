"""Service catalog for imagegate.

Immutable registry of the services this pipeline builds, verifies, and
publishes. Each ``ServiceSpec`` carries everything the other components
need: where the image-source descriptor lives, how the image is named,
which port the process listens on, how its health is judged, how long it
may take to come up, and the minimal environment it needs to start on
its own.

Why This Matters:
    Per-service behaviour (the uploader has no health endpoint, only the
    front-end takes release-tracking build parameters) lives in data, not
    in ``if service == ...`` branches scattered across components. Adding
    a service is one ``ServiceSpec`` entry; the builder, verifier, pusher,
    orchestrator and CLI pick it up unchanged.

Key Concepts:
    ServiceSpec: Frozen dataclass - name, port, health path, presence-only
        marker, timeout, bootstrap env, service-specific build parameters.
    ServiceRegistry: Read-only lookup by name over an ordered, immutable
        mapping. ``select()`` resolves the operator's ``--service`` choice.
    CATALOG: The default registry (play, back, map-storage, uploader).
    LINEAGE: Literal embedded in every image name.

Architecture Decisions:
    - Frozen dataclasses (not Pydantic): specs are constants, not input.
    - ``MappingProxyType`` for the registry: no runtime mutation.
    - Case-insensitive lookup: ``CATALOG.get("Play")`` works.

Tags:
    catalog, services, registry, specs, images
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from imagegate.core.errors import UnknownServiceError

LINEAGE = "universe"
"""Fixed literal tying every image to this build pipeline."""

DESCRIPTOR_NAME = f"Dockerfile.{LINEAGE}"

RELEASE_TRACKING_PARAMS: tuple[str, ...] = (
    "SENTRY_RELEASE",
    "SENTRY_URL",
    "SENTRY_AUTH_TOKEN",
    "SENTRY_ORG",
    "SENTRY_PROJECT",
    "SENTRY_ENVIRONMENT",
)

_PLACEHOLDER_SECRET = "test-secret-key-for-verification-only"
_PLACEHOLDER_TOKEN = "test-token"


@dataclass(frozen=True)
class ServiceSpec:
    """Specification for one catalog service."""

    name: str
    """Service identifier (e.g., 'play')."""

    port: int
    """Port the process listens on inside the container."""

    health_path: str = "/ping"
    """Path polled during verification."""

    presence_only: bool = False
    """Any HTTP response counts as healthy (no real health endpoint)."""

    health_timeout: int = 30
    """Seconds the verifier waits for health before giving up."""

    bootstrap_env: Mapping[str, str] = field(default_factory=dict, hash=False)
    """Minimal environment that lets the image start standalone."""

    build_param_keys: tuple[str, ...] = ()
    """Extra build parameters forwarded only for this service."""

    descriptor: str = ""
    """Image-source descriptor path relative to the repository root."""

    description: str = ""

    def __post_init__(self) -> None:
        if not self.descriptor:
            object.__setattr__(self, "descriptor", f"{self.name}/{DESCRIPTOR_NAME}")
        object.__setattr__(self, "bootstrap_env", MappingProxyType(dict(self.bootstrap_env)))

    @property
    def repository(self) -> str:
        """Repository name without namespace or tag (``play-universe``)."""
        return f"{self.name}-{LINEAGE}"

    def image_ref(self, tag: str, namespace: str | None = None) -> str:
        """Build the deterministic image reference for a tag.

        ``{namespace}/{service}-{lineage}:{tag}``, or the local-only
        ``{service}-{lineage}:{tag}`` when no namespace is configured.
        """
        if namespace:
            return f"{namespace}/{self.repository}:{tag}"
        return f"{self.repository}:{tag}"

    def descriptor_path(self, repo_root: Path) -> Path:
        return repo_root / self.descriptor


PLAY = ServiceSpec(
    name="play",
    port=3000,
    health_path="/ping",
    health_timeout=30,
    bootstrap_env={
        "NODE_ENV": "production",
        "SECRET_KEY": _PLACEHOLDER_SECRET,
        "API_URL": "http://localhost:8080",
        "MAP_STORAGE_API_TOKEN": _PLACEHOLDER_TOKEN,
        "UPLOADER_URL": "http://localhost:8080",
        "ICON_URL": "http://localhost:8080",
    },
    build_param_keys=RELEASE_TRACKING_PARAMS,
    description="Front-end and websocket gateway",
)

BACK = ServiceSpec(
    name="back",
    port=8080,
    health_path="/ping",
    health_timeout=30,
    bootstrap_env={
        "NODE_ENV": "production",
        "SECRET_KEY": _PLACEHOLDER_SECRET,
        "PLAY_URL": "http://localhost:3000",
    },
    description="Room and session back-end",
)

MAP_STORAGE = ServiceSpec(
    name="map-storage",
    port=3000,
    health_path="/ping",
    health_timeout=30,
    bootstrap_env={
        "NODE_ENV": "production",
        "API_URL": "http://localhost:8080",
        "MAP_STORAGE_API_TOKEN": _PLACEHOLDER_TOKEN,
        "PUSHER_URL": "http://localhost:3000",
    },
    description="Map file storage API",
)

UPLOADER = ServiceSpec(
    name="uploader",
    port=8080,
    health_path="/",
    presence_only=True,  # answers 404 on "/", which still proves it is serving
    health_timeout=20,
    bootstrap_env={
        "NODE_ENV": "production",
    },
    description="File upload service",
)


class ServiceRegistry:
    """Read-only catalog lookup.

    Parameters
    ----------
    specs
        Service specs in catalog order. Names must be unique.
    """

    def __init__(self, specs: Iterable[ServiceSpec]) -> None:
        entries: dict[str, ServiceSpec] = {}
        for spec in specs:
            key = spec.name.lower()
            if key in entries:
                raise ValueError(f"Duplicate service in catalog: {spec.name!r}")
            entries[key] = spec
        self._specs: Mapping[str, ServiceSpec] = MappingProxyType(entries)

    def __iter__(self) -> Iterator[ServiceSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower().strip() in self._specs

    def names(self) -> list[str]:
        """All service names in catalog order."""
        return [spec.name for spec in self._specs.values()]

    def get(self, name: str) -> ServiceSpec:
        """Look up a service spec by name.

        Parameters
        ----------
        name
            Service name (case-insensitive).

        Raises
        ------
        UnknownServiceError
            If the name is not in the catalog.
        """
        key = name.lower().strip()
        if key not in self._specs:
            raise UnknownServiceError(name, self.names())
        return self._specs[key]

    def select(self, name: str | None = None) -> list[ServiceSpec]:
        """Resolve the operator's service selection.

        ``None`` (or an empty string) selects the full catalog in order.
        """
        if not name:
            return list(self._specs.values())
        return [self.get(name)]


CATALOG = ServiceRegistry([PLAY, BACK, MAP_STORAGE, UPLOADER])
