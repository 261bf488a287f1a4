from __future__ import annotations

from typing import Any, Mapping, Union

from pydantic import ValidationError

from archpipe.core.config import ReleaseSettings
from archpipe.core.models import DeploymentDescriptor, RegistryPushEvent
from archpipe.exception import DescriptorBuildFailed


class ReleaseDescriptorBuilder:
    """
    Событие пуша в registry -> DeploymentDescriptor.
    Чистое преобразование: без сети. Имя контейнера берётся из настроек.
    """

    def __init__(self, settings: ReleaseSettings) -> None:
        self.settings = settings

    def build(self, event: Union[RegistryPushEvent, Mapping[str, Any]]) -> DeploymentDescriptor:
        """
        :raises DescriptorBuildFailed: в событии нет пригодного imageUri
        """
        if not isinstance(event, RegistryPushEvent):
            try:
                event = RegistryPushEvent.model_validate(dict(event))
            except (ValidationError, TypeError, ValueError) as e:
                raise DescriptorBuildFailed(
                    description="Registry event is malformed",
                    reason="malformed_event",
                    logs=[str(e)],
                ) from e

        image_uri = event.image_uri
        if not isinstance(image_uri, str) or not image_uri.strip():
            raise DescriptorBuildFailed(
                description="Registry event has no imageUri",
                reason="missing_image_uri",
            )

        image_uri = image_uri.strip()
        if any(ch.isspace() for ch in image_uri) or "/" not in image_uri:
            raise DescriptorBuildFailed(
                description=f"imageUri {image_uri!r} is not a registry reference",
                reason="unresolvable_image_uri",
            )

        return DeploymentDescriptor(
            container_name=self.settings.container_name,
            image_uri=image_uri,
        )
