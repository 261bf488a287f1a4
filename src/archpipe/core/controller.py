from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import click
from pydantic import BaseModel, ConfigDict

from archpipe.exception import DefinitionError, PipelineException
from archpipe.model import TRIGGER_ARTIFACTS, Action, PipelineDefinition, Stage
from archpipe.utils import matches, utcnow

from .models import ActionStatus, Artifact, PipelineRun, RegistryPushEvent, SourcePushEvent


# (action, объявленные входы, диагностический лог action'а) -> содержимое выходного артефакта
ActionHandler = Callable[[Action, Dict[str, Artifact], List[str]], Awaitable[Any]]
TriggerEvent = Union[SourcePushEvent, RegistryPushEvent]


class SourceTrigger(BaseModel):
    """Пуш в репозиторий исходников; ветка должна совпасть с фильтром."""

    model_config = ConfigDict(frozen=True)

    branch_filter: str
    artifact_ref: str = "source"

    def accepts(self, event: TriggerEvent) -> bool:
        return isinstance(event, SourcePushEvent) and matches(event.branch, self.branch_filter)


class RegistryTrigger(BaseModel):
    """Пуш в registry; тег должен совпасть с шаблоном."""

    model_config = ConfigDict(frozen=True)

    tag_pattern: str
    artifact_ref: str = "event"

    def accepts(self, event: TriggerEvent) -> bool:
        if not isinstance(event, RegistryPushEvent):
            return False
        tag = event.effective_tag
        # без тега матчим только шаблон "всё": пусть первая стадия отклонит событие
        if tag is None:
            return not self.tag_pattern or self.tag_pattern == "*"
        return matches(tag, self.tag_pattern)


Trigger = Union[SourceTrigger, RegistryTrigger]


def validate_definition(definition: PipelineDefinition) -> None:
    """
    Статическая проверка связывания артефактов:
    - имена actions уникальны, стадии не пустые;
    - каждый вход — артефакт триггера или выход более ранней стадии;
    - каждый артефакт производится один раз и потребляется не более чем одной стадией.

    :raises DefinitionError:
    """
    errors: List[str] = []

    names = definition.action_names()
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        errors.append(f"duplicate action names: {', '.join(duplicates)}")

    available: Set[str] = set(TRIGGER_ARTIFACTS)
    produced: Set[str] = set()
    consumed_by: Dict[str, str] = {}

    for stage in definition.stages:
        if not stage.actions:
            errors.append(f"stage {stage.name!r} has no actions")
        for action in stage.actions:
            for ref in action.inputs:
                if ref not in available:
                    errors.append(f"{action.name}: input {ref!r} is not produced by an earlier stage")
                owner = consumed_by.setdefault(ref, stage.name)
                if owner != stage.name:
                    errors.append(
                        f"{action.name}: artifact {ref!r} already consumed by stage {owner!r}"
                    )
            if action.kind == "build" and action.environment is None:
                errors.append(f"{action.name}: build action requires environment")
        for action in stage.actions:
            if action.output is None:
                continue
            if action.output in produced or action.output in TRIGGER_ARTIFACTS:
                errors.append(f"{action.name}: artifact {action.output!r} is produced twice")
            produced.add(action.output)
        # выходы стадии видны только следующим стадиям
        available |= {a.output for a in stage.actions if a.output}

    if errors:
        raise DefinitionError(
            description=f"Pipeline {definition.name} is invalid",
            reason="invalid_definition",
            logs=errors,
        )


class PipelineController:
    """
    Исполняет PipelineDefinition как PipelineRun.

    - стадии строго последовательно (барьер);
    - actions стадии — параллельные asyncio-задачи, ждём завершения всех;
    - первая ошибка в стадии валит run, результаты соседей отбрасываются;
    - отмена run'а отменяет задачи активной стадии, статус — cancelled;
    - автоматических повторов нет.

    Все run'ы остаются в истории (runs) для аудита.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        handlers: Dict[str, ActionHandler],
        trigger: Trigger,
    ) -> None:
        validate_definition(definition)
        missing = sorted(
            {a.kind for s in definition.stages for a in s.actions} - set(handlers)
        )
        if missing:
            raise DefinitionError(
                description=f"No handlers for action kinds: {', '.join(missing)}",
                reason="missing_handler",
            )
        self.definition = definition
        self.handlers = handlers
        self.trigger = trigger
        self.runs: Dict[str, PipelineRun] = {}
        self._active: Dict[str, Dict[str, asyncio.Task]] = {}
        self._cancel_requested: Set[str] = set()

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self.runs.get(run_id)

    def accepts(self, event: TriggerEvent) -> bool:
        return self.trigger.accepts(event)

    async def on_event(self, event: TriggerEvent) -> Optional[PipelineRun]:
        """
        Точка входа триггера. Не подходящее под фильтр событие игнорируется (None).
        Каждое событие — новый независимый run.
        """
        if not self.accepts(event):
            click.echo(f"[{self.definition.name}] событие пропущено фильтром: {event.model_dump()}")
            return None
        run = self.create_run(event)
        return await self.execute(run)

    def create_run(self, event: TriggerEvent) -> PipelineRun:
        run_id = uuid.uuid4().hex[:12]
        run = PipelineRun(
            run_id=run_id,
            pipeline=self.definition.name,
            trigger=event.model_dump(by_alias=True),
            stages=[stage.name for stage in self.definition.stages],
        )
        for stage in self.definition.stages:
            for action in stage.actions:
                run.actions[action.name] = _new_status(action, stage)
        run.artifacts[self.trigger.artifact_ref] = Artifact(
            ref=self.trigger.artifact_ref,
            produced_by="trigger",
            content=event,
        )
        self.runs[run_id] = run
        return run

    async def execute(self, run: PipelineRun) -> PipelineRun:
        if run.status != "pending":
            raise DefinitionError(
                description=f"Run {run.run_id} already {run.status}; start a new run instead",
                reason="run_not_pending",
            )
        run.status = "running"
        click.echo(f"[{run.pipeline}] run {run.run_id} запущен")

        try:
            for index, stage in enumerate(self.definition.stages):
                if run.run_id in self._cancel_requested:
                    break
                run.stage_index = index
                click.echo(f"[{run.pipeline}] стадия {stage.name} ({len(stage.actions)} action)")
                if not await self._run_stage(run, stage):
                    break
        except asyncio.CancelledError:
            self._cancel_requested.add(run.run_id)
            self._finish(run)
            raise
        finally:
            self._active.pop(run.run_id, None)

        self._finish(run)
        return run

    def cancel(self, run_id: str) -> bool:
        """
        Best-effort отмена: задачи активной стадии отменяются
        (build runner'ы убиваются, новые инстансы деплоя гасятся).
        """
        run = self.runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        self._cancel_requested.add(run_id)
        for task in self._active.get(run_id, {}).values():
            task.cancel()
        click.echo(f"[{run.pipeline}] run {run_id}: запрошена отмена (стадия {run.current_stage})")
        return True

    async def _run_stage(self, run: PipelineRun, stage: Stage) -> bool:
        tasks: Dict[str, asyncio.Task] = {}
        for action in stage.actions:
            inputs = {ref: run.artifacts[ref] for ref in action.inputs}
            status = run.actions[action.name]
            status.status = "running"
            status.started_at = utcnow()
            tasks[action.name] = asyncio.create_task(
                self._invoke(action, inputs, status.logs), name=f"{run.run_id}:{action.name}"
            )
        self._active[run.run_id] = tasks
        by_task = {task: name for name, task in tasks.items()}

        outputs: List[Artifact] = []
        failed = False
        pending = set(tasks.values())
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    action = _find_action(stage, by_task[task])
                    status = run.actions[action.name]
                    status.finished_at = utcnow()
                    if task.cancelled():
                        status.status = "cancelled"
                        continue
                    error = task.exception()
                    if error is None:
                        status.status = "succeeded"
                        if action.output:
                            outputs.append(
                                Artifact(ref=action.output, produced_by=action.name, content=task.result())
                            )
                        continue
                    status.status = "failed"
                    if isinstance(error, PipelineException):
                        status.error_kind = error.kind
                        status.reason = error.reason
                        status.logs.append(error.description)
                    else:
                        status.error_kind = type(error).__name__
                        status.reason = "unexpected_error"
                        status.logs.append(repr(error))
                    if not failed:
                        failed = True
                        run.failed_action = action.name
                        run.error = f"{status.error_kind}: {status.reason}"
                        click.echo(
                            f"[{run.pipeline}] {action.name} упал ({run.error}); "
                            "ждём остальные actions стадии",
                            err=True,
                        )
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for name, task in tasks.items():
                if run.actions[name].status == "running":
                    run.actions[name].status = "cancelled"
                    run.actions[name].finished_at = utcnow()
            raise

        if failed or run.run_id in self._cancel_requested:
            for artifact in outputs:
                run.actions[artifact.produced_by].logs.append(
                    f"Результат {artifact.ref} отброшен: стадия {stage.name} не завершилась успешно"
                )
            return False

        # барьер пройден: выходы стадии становятся видимы следующей
        for artifact in outputs:
            if artifact.ref in run.artifacts:
                raise DefinitionError(
                    description=f"Artifact {artifact.ref} is write-once",
                    reason="artifact_rewrite",
                )
            run.artifacts[artifact.ref] = artifact
        return True

    async def _invoke(self, action: Action, inputs: Dict[str, Artifact], logs: List[str]) -> Any:
        handler = self.handlers[action.kind]
        return await handler(action, inputs, logs)

    def _finish(self, run: PipelineRun) -> None:
        if run.is_terminal:
            return
        if run.run_id in self._cancel_requested:
            run.status = "cancelled"
            run.error = run.error or "cancelled"
        elif run.failed_action is not None:
            run.status = "failed"
        else:
            run.status = "succeeded"
        run.finished_at = utcnow()
        self._cancel_requested.discard(run.run_id)
        click.echo(f"[{run.pipeline}] run {run.run_id}: {run.status}")


def _new_status(action: Action, stage: Stage) -> ActionStatus:
    return ActionStatus(name=action.name, kind=action.kind, stage=stage.name)


def _find_action(stage: Stage, name: str) -> Action:
    for action in stage.actions:
        if action.name == name:
            return action
    raise KeyError(name)
