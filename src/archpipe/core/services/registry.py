from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Protocol, Set, Union

from archpipe.core.config import UNTAGGED_MAX_AGE_DAYS
from archpipe.core.models import ARCHITECTURES, ImageReference, RegistryPushEvent
from archpipe.exception import PipelineException
from archpipe.utils import utcnow

from .process import run_process, run_script


class RegistryError(PipelineException):
    """
    Registry отклонил операцию (авторизация, права, отсутствующий тег).
    """

    kind = "RegistryError"


class Registry(Protocol):
    """
    Контракт container registry, который потребляет пайплайн.
    Registry — общий внешне-синхронизированный ресурс: параллельные пуши
    разных тегов безопасны.
    """

    registry_uri: str

    async def push(self, tag: str, image: bytes, platform: Optional[str] = None) -> None: ...

    async def exists(self, tag: str) -> bool: ...

    async def pull(self, tag: str, platform: Optional[str] = None) -> bytes: ...

    async def put_manifest_list(self, tag: str, sources: Dict[str, str]) -> None: ...

    async def resolve(self, tag: str, platform: str) -> Optional[str]:
        """
        Образ для платформы клиента в форме тега ImageReference:
        обычный тег ("v1-arm64") или дайджест ("@sha256:..."), если registry
        хранит manifest list только по дайджестам. None — платформы нет.
        """
        ...


@dataclass
class ImageRecord:
    digest: str
    blob: bytes
    platform: Optional[str]
    pushed_at: datetime = field(default_factory=utcnow)


def _digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


class InMemoryRegistry:
    """
    Registry в памяти процесса: локальные прогоны и тесты.

    - push / exists / pull / resolve / put_manifest_list;
    - поток уведомлений о пушах (notifications) — вход для release-пайплайна;
    - lifecycle-правило: перезаписанные (untagged) образы удаляются через N дней.
    """

    def __init__(self, registry_uri: str, denied_tags: Optional[Set[str]] = None) -> None:
        self.registry_uri = registry_uri
        self.images: Dict[str, ImageRecord] = {}
        self.manifests: Dict[str, Dict[str, str]] = {}
        self.untagged: List[ImageRecord] = []
        self.denied_tags: Set[str] = set(denied_tags or ())
        self.manifest_writes = 0
        self._lock = asyncio.Lock()
        self._subscribers: List[asyncio.Queue] = []

    def uri(self, tag: str) -> str:
        return ImageReference(registry_uri=self.registry_uri, tag=tag).uri

    async def push(self, tag: str, image: bytes, platform: Optional[str] = None) -> None:
        if tag in self.denied_tags:
            raise RegistryError(
                description=f"Push of {self.uri(tag)} denied",
                reason="push_rejected",
            )
        async with self._lock:
            previous = self.images.get(tag)
            record = ImageRecord(digest=_digest(image), blob=image, platform=platform)
            if previous is not None and previous.digest != record.digest:
                self.untagged.append(previous)
            self.images[tag] = record
            # тег был manifest list'ом — теперь это обычный образ
            self.manifests.pop(tag, None)
        self._notify(tag, record.digest)

    async def exists(self, tag: str) -> bool:
        return tag in self.images or tag in self.manifests

    async def pull(self, tag: str, platform: Optional[str] = None) -> bytes:
        if tag in self.manifests:
            source = await self.resolve(tag, platform or ARCHITECTURES["amd64"])
            if source is None:
                raise RegistryError(
                    description=f"No image for platform {platform} in {self.uri(tag)}",
                    reason="platform_not_found",
                )
            tag = source
        record = self.images.get(tag)
        if record is None:
            raise RegistryError(description=f"Tag {self.uri(tag)} not found", reason="tag_not_found")
        return record.blob

    async def put_manifest_list(self, tag: str, sources: Dict[str, str]) -> None:
        async with self._lock:
            missing = [src for src in sources.values() if src not in self.images]
            if missing:
                raise RegistryError(
                    description=f"Manifest {self.uri(tag)} references missing tags {missing}",
                    reason="tag_not_found",
                )
            self.manifests[tag] = dict(sources)
            self.manifest_writes += 1
        self._notify(tag, self.manifest_digest(tag))

    async def resolve(self, tag: str, platform: str) -> Optional[str]:
        """
        Тег -> архитектурный тег для платформы клиента.
        Обычный тег резолвится сам в себя, если платформа совпадает или не указана.
        """
        manifest = self.manifests.get(tag)
        if manifest is not None:
            return manifest.get(platform)
        record = self.images.get(tag)
        if record is None:
            return None
        if record.platform is None or record.platform == platform:
            return tag
        return None

    def manifest_digest(self, tag: str) -> str:
        manifest = self.manifests[tag]
        entries = {
            platform: self.images[src].digest for platform, src in sorted(manifest.items())
        }
        return _digest(json.dumps(entries, sort_keys=True).encode("utf-8"))

    def prune_untagged(
        self,
        max_age: timedelta = timedelta(days=UNTAGGED_MAX_AGE_DAYS),
        now: Optional[datetime] = None,
    ) -> int:
        """
        Удаляет untagged-образы старше max_age. Возвращает число удалённых.
        """
        now = now or utcnow()
        keep = [rec for rec in self.untagged if now - rec.pushed_at <= max_age]
        removed = len(self.untagged) - len(keep)
        self.untagged = keep
        return removed

    def _notify(self, tag: str, digest: str) -> None:
        event = RegistryPushEvent(image_uri=self.uri(tag), tag=tag, digest=digest)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    async def notifications(self) -> AsyncIterator[RegistryPushEvent]:
        """
        Поток событий о пушах. Подписка живёт, пока итерируется генератор.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)


class DockerCliRegistry:
    """
    Адаптер к настоящему registry через docker CLI.
    Потока уведомлений у docker CLI нет — release-пайплайн в этом режиме
    запускается по событию из файла (см. CLI).
    """

    def __init__(self, registry_uri: str, docker: str = "docker") -> None:
        self.registry_uri = registry_uri
        self.docker = docker

    def uri(self, tag: str) -> str:
        return ImageReference(registry_uri=self.registry_uri, tag=tag).uri

    async def push(self, tag: str, image: Union[bytes, str], platform: Optional[str] = None) -> None:
        """
        image — tar-архив образа (docker save) или имя локального образа.
        """
        if isinstance(image, bytes):
            loaded = await run_process([self.docker, "load", "--quiet"], stdin=image)
            if not loaded.ok:
                raise RegistryError(description="docker load failed", reason="push_rejected", logs=loaded.output)
            # "Loaded image: name:tag"
            source = loaded.output[-1].split(": ", 1)[-1].strip() if loaded.output else ""
        else:
            source = image

        tagged = await run_process([self.docker, "tag", source, self.uri(tag)])
        if not tagged.ok:
            raise RegistryError(description=f"docker tag {source} failed", reason="push_rejected", logs=tagged.output)
        pushed = await run_process([self.docker, "push", self.uri(tag)])
        if not pushed.ok:
            raise RegistryError(
                description=f"Push of {self.uri(tag)} rejected",
                reason="push_rejected",
                logs=pushed.output,
            )

    async def _inspect(self, tag: str) -> Optional[dict]:
        result = await run_process([self.docker, "manifest", "inspect", self.uri(tag)])
        if not result.ok:
            return None
        try:
            return json.loads("\n".join(result.output))
        except json.JSONDecodeError:
            return None

    async def exists(self, tag: str) -> bool:
        return await self._inspect(tag) is not None

    async def pull(self, tag: str, platform: Optional[str] = None) -> bytes:
        args = [self.docker, "pull"]
        if platform:
            args += ["--platform", platform]
        pulled = await run_process(args + [self.uri(tag)])
        if not pulled.ok:
            raise RegistryError(description=f"Pull of {self.uri(tag)} failed", reason="tag_not_found", logs=pulled.output)
        saved = await run_process([self.docker, "save", self.uri(tag)])
        if not saved.ok:
            raise RegistryError(description=f"docker save {self.uri(tag)} failed", reason="tag_not_found")
        return saved.raw

    async def put_manifest_list(self, tag: str, sources: Dict[str, str]) -> None:
        arch_sources = {platform.rsplit("/", 1)[-1]: src for platform, src in sources.items()}
        result = await run_script(
            "manifest",
            registry_uri=self.registry_uri,
            base_tag=tag,
            sources=arch_sources,
        )
        if not result.ok:
            raise RegistryError(
                description=f"Manifest push of {self.uri(tag)} failed",
                reason="push_rejected",
                logs=result.output,
            )

    async def resolve(self, tag: str, platform: str) -> Optional[str]:
        manifest = await self._inspect(tag)
        if manifest is None:
            return None
        entries = manifest.get("manifests")
        if not entries:
            return tag
        os_name, _, arch = platform.partition("/")
        for entry in entries:
            plat = entry.get("platform", {})
            if plat.get("os") == os_name and plat.get("architecture") == arch:
                digest = entry.get("digest")
                return f"@{digest}" if digest else None
        return None
