from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional

from archpipe.core.models import BuildEnvironment


ActionKind = Literal["build", "merge", "descriptor", "deploy"]

# Артефакты, которые кладёт в run сам триггер (до первой стадии)
TRIGGER_ARTIFACTS = ("source", "event")


class Action(BaseModel):
    """
    Единица работы внутри стадии.
    Связывание статическое: inputs — ссылки на артефакты, объявленные
    раньше (триггером или предыдущими стадиями), output — ссылка на результат.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    kind: ActionKind
    inputs: List[str] = Field(default_factory=list)
    output: Optional[str] = None

    # только для build
    environment: Optional[BuildEnvironment] = None
    # только для merge: базовый тег, который собираем из архитектурных
    base_tag: Optional[str] = None


class Stage(BaseModel):
    """
    Барьер: все actions стадии выполняются параллельно,
    следующая стадия стартует только после успеха всех.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    actions: List[Action]


class PipelineDefinition(BaseModel):
    """
    Абстрактный пайплайн: упорядоченный список стадий.
    Неизменяем после старта run'а.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    stages: List[Stage]

    def action_names(self) -> List[str]:
        return [action.name for stage in self.stages for action in stage.actions]
