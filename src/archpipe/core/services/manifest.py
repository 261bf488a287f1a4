from __future__ import annotations

from typing import Dict, List

from archpipe.core.models import ARCHITECTURES, ImageReference
from archpipe.exception import MergeFailed

from .registry import Registry, RegistryError


class ManifestMerger:
    """
    Публикует manifest list <base_tag> поверх архитектурных тегов.

    Единственный, кто пишет мультиарх-тег, и только после того, как оба
    архитектурных тега подтверждены в registry. Повторный вызов с теми же
    входами перезаписывает тег тем же содержимым.
    """

    def __init__(self, registry: Registry) -> None:
        self.registry = registry

    async def merge(
        self,
        registry_uri: str,
        base_tag: str,
        amd64_tag: str,
        arm64_tag: str,
        logs: List[str],
    ) -> ImageReference:
        """
        :raises MergeFailed: если любой из архитектурных тегов отсутствует
        """
        sources: Dict[str, str] = {
            ARCHITECTURES["amd64"]: amd64_tag,
            ARCHITECTURES["arm64"]: arm64_tag,
        }

        missing: List[str] = []
        for platform, tag in sources.items():
            if await self.registry.exists(tag):
                logs.append(f"{registry_uri}:{tag} ({platform}) найден в registry")
            else:
                missing.append(tag)
                logs.append(f"{registry_uri}:{tag} ({platform}) отсутствует в registry")

        if missing:
            raise MergeFailed(
                description=f"Cannot merge {base_tag}: missing tags {', '.join(missing)}",
                reason="source_tag_missing",
                logs=logs,
            )

        try:
            await self.registry.put_manifest_list(base_tag, sources)
        except RegistryError as e:
            logs.extend(e.logs)
            raise MergeFailed(
                description=f"Registry rejected manifest list {base_tag}: {e.description}",
                reason=e.reason,
                logs=logs,
            ) from e

        logs.append(f"Manifest list {registry_uri}:{base_tag} -> {amd64_tag}, {arm64_tag}")
        return ImageReference(registry_uri=registry_uri, tag=base_tag)
