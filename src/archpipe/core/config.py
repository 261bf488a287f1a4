from pathlib import Path
import os
from tempfile import gettempdir
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import HealthCheck

"""
Настройки пайплайна.

Всё читается из переменных окружения ARCHPIPE_*; значения по умолчанию
совпадают с параметрами исходного стека (тег latest, ветка prod,
контейнер mattermost-server).
Рабочий каталог для временных checkout'ов — <tmp>/archpipe,
переопределяется ARCHPIPE_WORKDIR.
"""

BASE_TEMP_DIR = Path(
    os.getenv("ARCHPIPE_WORKDIR", gettempdir())
) / "archpipe"

DEFAULT_IMAGE_TAG = "latest"
DEFAULT_BRANCH = "prod"
DEFAULT_CONTAINER_NAME = "mattermost-server"
# lifecycle-правило registry: untagged-образы живут 2 дня
UNTAGGED_MAX_AGE_DAYS = 2


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


class PipelineSettings(BaseModel):
    """
    Конфигурация build-пайплайна.
    """

    model_config = ConfigDict(frozen=True)

    registry_uri: str
    image_tag: str = DEFAULT_IMAGE_TAG
    branch_filter: str = DEFAULT_BRANCH
    dockerfile_path: str = "Dockerfile"
    build_script: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "PipelineSettings":
        values = {
            "registry_uri": os.getenv("ARCHPIPE_REGISTRY_URI", ""),
            "image_tag": os.getenv("ARCHPIPE_IMAGE_TAG", DEFAULT_IMAGE_TAG),
            "branch_filter": os.getenv("ARCHPIPE_BRANCH", DEFAULT_BRANCH),
            "dockerfile_path": os.getenv("ARCHPIPE_DOCKERFILE", "Dockerfile"),
            "build_script": os.getenv("ARCHPIPE_BUILD_SCRIPT") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class DeploymentSettings(BaseModel):
    """
    grace_period / deployment_timeout — в секундах.
    """

    model_config = ConfigDict(frozen=True)

    grace_period: float = 120.0
    deployment_timeout: float = 600.0
    desired_count: int = Field(default=1, ge=1)
    health_check: HealthCheck = Field(default_factory=HealthCheck)

    @classmethod
    def from_env(cls) -> "DeploymentSettings":
        health_check = HealthCheck(
            path=os.getenv("ARCHPIPE_HEALTH_PATH", "/"),
            interval=_env_float("ARCHPIPE_HEALTH_INTERVAL", 30.0),
            timeout=_env_float("ARCHPIPE_HEALTH_TIMEOUT", 10.0),
            healthy_threshold=_env_int("ARCHPIPE_HEALTHY_THRESHOLD", 2),
            unhealthy_threshold=_env_int("ARCHPIPE_UNHEALTHY_THRESHOLD", 3),
        )
        return cls(
            grace_period=_env_float("ARCHPIPE_GRACE_PERIOD", 120.0),
            deployment_timeout=_env_float("ARCHPIPE_DEPLOYMENT_TIMEOUT", 600.0),
            desired_count=_env_int("ARCHPIPE_DESIRED_COUNT", 1),
            health_check=health_check,
        )


class ReleaseSettings(BaseModel):
    """
    Конфигурация release-пайплайна.

    container_name      — статическое имя контейнера в сервисе, не берётся из события;
    tag_pattern         — какие теги registry запускают релиз;
    require_known_build — деплоить только теги, собранные нашим build-пайплайном.
    """

    model_config = ConfigDict(frozen=True)

    container_name: str = DEFAULT_CONTAINER_NAME
    tag_pattern: str = DEFAULT_IMAGE_TAG
    require_known_build: bool = False
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)

    @classmethod
    def from_env(cls) -> "ReleaseSettings":
        return cls(
            container_name=os.getenv("ARCHPIPE_CONTAINER_NAME", DEFAULT_CONTAINER_NAME),
            tag_pattern=os.getenv("ARCHPIPE_TAG_PATTERN", DEFAULT_IMAGE_TAG),
            require_known_build=os.getenv("ARCHPIPE_REQUIRE_KNOWN_BUILD", "").lower()
            in ("1", "true", "yes"),
            deployment=DeploymentSettings.from_env(),
        )
