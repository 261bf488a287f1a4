from typing import List, Optional


class PipelineException(Exception):
    """
    Базовое исключение пайплайна.

    description — человекочитаемое описание для CLI;
    reason      — машинно-читаемая причина (подтип ошибки);
    logs        — диагностический вывод, накопленный к моменту ошибки.
    """

    kind = "PipelineError"

    def __init__(
        self,
        *args,
        description: str = "Something happend in pipeline",
        reason: str = "unknown",
        logs: Optional[List[str]] = None,
    ) -> None:
        super().__init__(description, *args)
        self.description = description
        self.reason = reason
        self.logs: List[str] = logs or []


class BuildFailed(PipelineException):
    """
    Сборка/пуш образа под одну архитектуру не удались.
    reason: dockerfile_not_found | build_exit_nonzero | push_rejected | source_unavailable
    """

    kind = "BuildFailed"


class MergeFailed(PipelineException):
    """
    Один из архитектурных тегов отсутствует в registry — manifest list не публикуется.
    """

    kind = "MergeFailed"


class DescriptorBuildFailed(PipelineException):
    kind = "DescriptorBuildFailed"


class DeploymentFailed(PipelineException):
    """
    Сервис отклонил обновление или раскатка не сошлась.
    Откат не выполняется — решение остаётся за оператором.
    """

    kind = "DeploymentFailed"


class DeploymentTimedOut(DeploymentFailed):
    kind = "DeploymentTimedOut"


class DefinitionError(PipelineException):
    """
    Некорректное описание пайплайна (ошибка связывания артефактов, дубли имён и т.п.).
    """

    kind = "DefinitionError"
