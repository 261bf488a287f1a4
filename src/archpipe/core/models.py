from __future__ import annotations

import json
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional, Tuple

from archpipe.utils import utcnow


# arch -> платформа docker
ARCHITECTURES: Dict[str, str] = {
    "amd64": "linux/amd64",
    "arm64": "linux/arm64",
}

RunStatus = Literal["pending", "running", "succeeded", "failed", "cancelled"]
ActionState = Literal["pending", "running", "succeeded", "failed", "cancelled"]
TERMINAL_RUN_STATUSES = ("succeeded", "failed", "cancelled")


class DockerfileInfo(BaseModel):
    """
    Один Dockerfile в исходниках.
    path    — путь относительно корня репо
    context — контекст сборки (директория, из которой запускаем docker build)
    """
    path: str
    context: str


class BuildEnvironment(BaseModel):
    """
    Параметры одной архитектурной сборки.
    Одна и та же структура для arm64 и amd64 — отличаются только значениями.
    """

    model_config = ConfigDict(frozen=True)

    registry_uri: str
    base_tag: str = "latest"
    platform: str
    dockerfile_path: str = "Dockerfile"

    @property
    def arch(self) -> str:
        return self.platform.rsplit("/", 1)[-1]

    @property
    def tag_suffix(self) -> str:
        return f"-{self.arch}"

    @property
    def image_tag(self) -> str:
        return f"{self.base_tag}{self.tag_suffix}"

    @property
    def image(self) -> "ImageReference":
        return ImageReference(registry_uri=self.registry_uri, tag=self.base_tag).for_arch(self.arch)

    def runner_env(self) -> Dict[str, str]:
        """Переменные окружения, которые обязан принять build runner."""
        return {
            "REPOSITORY_URI": self.registry_uri,
            "IMAGE_TAG": self.image_tag,
            "PLATFORM": self.platform,
            "PATH_TO_DOCKERFILE": self.dockerfile_path,
            "DOCKER_CLI_EXPERIMENTAL": "enabled",
        }


class ImageReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    registry_uri: str
    tag: str

    @property
    def uri(self) -> str:
        if self.tag.startswith("@"):
            return f"{self.registry_uri}{self.tag}"
        return f"{self.registry_uri}:{self.tag}"

    def for_arch(self, arch: str) -> "ImageReference":
        return ImageReference(registry_uri=self.registry_uri, tag=f"{self.tag}-{arch}")

    @classmethod
    def parse(cls, uri: str) -> "ImageReference":
        """
        registry.example/app:v3 -> (registry.example/app, v3)
        registry:5000/app       -> (registry:5000/app, latest)
        Дайджест (@sha256:...) остаётся частью тега.
        """
        if "@" in uri:
            repo, digest = uri.split("@", 1)
            return cls(registry_uri=repo, tag=f"@{digest}")
        head, sep, tail = uri.rpartition(":")
        if sep and "/" not in tail:
            return cls(registry_uri=head, tag=tail)
        return cls(registry_uri=uri, tag="latest")


class Artifact(BaseModel):
    """
    Непрозрачный артефакт: идентичность — ref, не содержимое.
    """

    model_config = ConfigDict(frozen=True)

    ref: str
    produced_by: str
    content: Any = None


class DeploymentDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    container_name: str
    image_uri: str

    def to_wire(self) -> List[Dict[str, str]]:
        return [{"name": self.container_name, "imageUri": self.image_uri}]

    def dumps(self) -> str:
        # формат imagedefinitions.json: один элемент, компактный JSON
        return json.dumps(self.to_wire(), separators=(",", ":"))

    @classmethod
    def loads(cls, data: str) -> "DeploymentDescriptor":
        entries = json.loads(data)
        if not isinstance(entries, list) or len(entries) != 1:
            raise ValueError("imagedefinitions must contain exactly one entry")
        entry = entries[0]
        return cls(container_name=entry["name"], image_uri=entry["imageUri"])


class HealthCheck(BaseModel):
    """
    Проба готовности для новых инстансов.
    interval/timeout — в секундах.
    """

    model_config = ConfigDict(frozen=True)

    path: str = "/"
    healthy_status: Tuple[int, int] = (200, 399)
    interval: float = 30.0
    timeout: float = 10.0
    healthy_threshold: int = Field(default=2, ge=1)
    unhealthy_threshold: int = Field(default=3, ge=1)

    def is_healthy_status(self, status: Optional[int]) -> bool:
        if status is None:
            return False
        low, high = self.healthy_status
        return low <= status <= high


class SourcePushEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch: str
    commit_ref: str
    repository: Optional[str] = None


class RegistryPushEvent(BaseModel):
    """
    Уведомление registry о пуше.
    Поле imageUri может отсутствовать — это проверяет ReleaseDescriptorBuilder.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    image_uri: Optional[str] = Field(default=None, alias="imageUri")
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def effective_tag(self) -> Optional[str]:
        if self.tag:
            return self.tag
        if self.image_uri:
            return ImageReference.parse(self.image_uri).tag
        return None


class ActionStatus(BaseModel):
    name: str
    kind: str
    stage: str
    status: ActionState = "pending"
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class PipelineRun(BaseModel):
    """
    Один запуск PipelineDefinition.
    Меняется только контроллером; после терминального статуса — только для аудита.
    """

    run_id: str
    pipeline: str
    trigger: Dict[str, Any] = Field(default_factory=dict)
    stage_index: int = 0
    stages: List[str] = Field(default_factory=list)
    actions: Dict[str, ActionStatus] = Field(default_factory=dict)
    artifacts: Dict[str, Artifact] = Field(default_factory=dict)
    status: RunStatus = "pending"
    error: Optional[str] = None
    failed_action: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def current_stage(self) -> Optional[str]:
        if 0 <= self.stage_index < len(self.stages):
            return self.stages[self.stage_index]
        return None

    def diagnostics(self, action_name: str) -> List[str]:
        status = self.actions.get(action_name)
        return list(status.logs) if status else []


class PipelineSummary(BaseModel):
    pipeline: str
    stages_count: int
    actions_count: int
    stages: List[str]
    action_names: List[str]
    # Короткое текстовое описание для CLI
    description: str


class RunResponse(BaseModel):
    status: Literal["ok", "error", "skipped"]
    run: Optional[PipelineRun] = None
    pipeline_summary: Optional[PipelineSummary] = None
    warnings: List[str] = []
    logs: List[str] = []
