"""Registry publisher for imagegate.

Pushes a verified, locally present image to its registry namespace. When
the run's tag is not the floating tag, the image is also re-tagged and
pushed as ``{namespace}/{service}-universe:<floating>``. A failed
floating republish is a warning on the outcome, never a failed push.

Tags:
    push, registry, floating-tag
"""

from __future__ import annotations

from dataclasses import dataclass

from imagegate.core.errors import DockerCommandError, PushError
from imagegate.core.logging import get_logger
from imagegate.pipeline.catalog import ServiceSpec
from imagegate.pipeline.config import PipelineSettings
from imagegate.pipeline.docker import DockerCli
from imagegate.pipeline.results import PushOutcome

logger = get_logger(__name__)


@dataclass(frozen=True)
class PendingPush:
    """One image awaiting the push confirmation prompt."""

    service: str
    image: str
    present: bool


class Pusher:
    """Publishes images to the registry.

    Parameters
    ----------
    settings
        Floating tag and docker binary.
    docker
        CLI wrapper (created from ``settings.docker_binary`` if omitted).
    """

    def __init__(self, settings: PipelineSettings, docker: DockerCli | None = None) -> None:
        self.settings = settings
        self.docker = docker or DockerCli(settings.docker_binary)

    def describe_pending(
        self,
        specs: list[ServiceSpec],
        version: str,
        namespace: str,
    ) -> list[PendingPush]:
        """Images a push would publish, with their local presence."""
        pending = []
        for spec in specs:
            image = spec.image_ref(version, namespace)
            pending.append(
                PendingPush(service=spec.name, image=image, present=self.docker.image_exists(image))
            )
        return pending

    def push(self, spec: ServiceSpec, version: str, namespace: str | None) -> PushOutcome:
        """Push one image and republish its floating tag.

        Raises
        ------
        PushError
            No namespace, image missing locally, or the registry refused
            the versioned push (its message is kept verbatim).
        """
        if not namespace:
            raise PushError(
                f"Cannot push {spec.name}: no registry namespace configured"
            ).with_context(service=spec.name, stage="push")

        image = spec.image_ref(version, namespace)
        outcome = PushOutcome(service=spec.name, image=image)

        if not self.docker.image_exists(image):
            raise PushError(
                f"Image not found locally: {image} (build it first)"
            ).with_context(service=spec.name, stage="push", image=image)

        logger.info("push.started", service=spec.name, image=image)
        try:
            self.docker.push(image)
        except DockerCommandError as exc:
            registry_message = (exc.stderr or exc.stdout).strip()
            logger.error("push.failed", service=spec.name, image=image, exit_code=exc.exit_code)
            raise PushError(
                f"Push of {image} failed: {registry_message or exc.message}", cause=exc,
            ).with_context(
                service=spec.name, stage="push", image=image, exit_code=exc.exit_code,
            ) from exc
        outcome.success = True
        logger.info("push.succeeded", service=spec.name, image=image)

        floating_tag = self.settings.floating_tag
        if version != floating_tag:
            self._push_floating(spec, image, spec.image_ref(floating_tag, namespace), outcome)
        return outcome

    def _push_floating(
        self,
        spec: ServiceSpec,
        image: str,
        floating: str,
        outcome: PushOutcome,
    ) -> None:
        outcome.floating_image = floating
        try:
            self.docker.tag(image, floating)
            self.docker.push(floating)
        except DockerCommandError as exc:
            outcome.floating_pushed = False
            outcome.warning = f"Floating tag {floating} not published: {exc.message}"
            logger.warning("push.floating_failed", service=spec.name, image=floating, error=exc.message)
            return
        outcome.floating_pushed = True
        logger.info("push.floating_succeeded", service=spec.name, image=floating)
