from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Set

import click

from archpipe.exception import (
    BuildFailed,
    DeploymentFailed,
    DeploymentTimedOut,
    DescriptorBuildFailed,
    MergeFailed,
)
from archpipe.model import Action

from .config import PipelineSettings, ReleaseSettings
from .controller import PipelineController, RegistryTrigger, SourceTrigger
from .models import (
    Artifact,
    DeploymentDescriptor,
    ImageReference,
    PipelineRun,
    RegistryPushEvent,
    RunResponse,
    SourcePushEvent,
)
from .services.build_job import ArchitectureBuildJob, BuildRunner, ShellBuildRunner
from .services.builders import pipeline as builder
from .services.deploy import DeploymentDriver
from .services.descriptor import ReleaseDescriptorBuilder
from .services.git_module import GitExceptions, LocalRepo, SourceCheckout
from .services.manifest import ManifestMerger
from .services.registry import Registry
from .services.service import DeployableService


class ArchPipeCore:
    """
    Фасад: собирает build- и release-пайплайны из компонентов
    и отдаёт результат run'а в виде RunResponse.

    source — URL git-репозитория или путь к локальной директории;
    clone  — False: собирать прямо из source без клонирования.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        registry: Registry,
        source: Optional[str] = None,
        runner: Optional[BuildRunner] = None,
        checkout: Optional[SourceCheckout] = None,
        release_settings: Optional[ReleaseSettings] = None,
        service: Optional[DeployableService] = None,
        driver: Optional[DeploymentDriver] = None,
        clone: bool = True,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.source = source
        self.clone = clone
        self.checkout = checkout or SourceCheckout(default_branch=settings.branch_filter)
        self.build_job = ArchitectureBuildJob(runner or ShellBuildRunner(settings.build_script))
        self.merger = ManifestMerger(registry)

        self.release_settings = release_settings or ReleaseSettings()
        self.descriptor_builder = ReleaseDescriptorBuilder(self.release_settings)
        self.service = service
        self.driver = driver or DeploymentDriver(self.release_settings.deployment)

        # образы, опубликованные успешными build-run'ами (для сверки при релизе)
        self.built_images: Set[str] = set()
        self.logs: List[str] = []
        self.warnings: List[str] = []

        self._build_controller: Optional[PipelineController] = None
        self._release_controller: Optional[PipelineController] = None

    # --- controllers ---

    @property
    def build_controller(self) -> PipelineController:
        if self._build_controller is None:
            definition, logs = builder.build_container_pipeline(self.settings)
            self.logs.extend(logs)
            self._build_controller = PipelineController(
                definition,
                handlers={"build": self._build, "merge": self._merge},
                trigger=SourceTrigger(branch_filter=self.settings.branch_filter),
            )
        return self._build_controller

    @property
    def release_controller(self) -> PipelineController:
        if self._release_controller is None:
            definition, logs = builder.build_release_pipeline(self.release_settings)
            self.logs.extend(logs)
            self._release_controller = PipelineController(
                definition,
                handlers={"descriptor": self._descriptor, "deploy": self._deploy},
                trigger=RegistryTrigger(tag_pattern=self.release_settings.tag_pattern),
            )
        return self._release_controller

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        for controller in (self._build_controller, self._release_controller):
            if controller is not None and run_id in controller.runs:
                return controller.runs[run_id]
        return None

    def cancel(self, run_id: str) -> bool:
        for controller in (self._build_controller, self._release_controller):
            if controller is not None and run_id in controller.runs:
                return controller.cancel(run_id)
        return False

    # --- entry points ---

    async def run_build(self, event: SourcePushEvent) -> RunResponse:
        controller = self.build_controller
        run = await controller.on_event(event)
        if run is not None and run.status == "succeeded":
            merged: ImageReference = run.artifacts["image_multiarch"].content
            self.built_images.add(merged.uri)
        return self._response(controller, run)

    async def run_release(self, event: RegistryPushEvent) -> RunResponse:
        if self.service is None:
            raise DeploymentFailed(
                description="Release pipeline requires a deployable service",
                reason="no_service",
            )
        controller = self.release_controller
        run = await controller.on_event(event)
        return self._response(controller, run)

    async def watch_releases(
        self,
        notifications: AsyncIterator[RegistryPushEvent],
        limit: Optional[int] = None,
    ) -> List[RunResponse]:
        """
        Подписка на поток пушей registry: каждый подходящий пуш — новый release-run.
        limit — сколько релизов обработать до выхода (None — бесконечно).
        """
        responses: List[RunResponse] = []
        async for event in notifications:
            if not self.release_controller.accepts(event):
                continue
            responses.append(await self.run_release(event))
            if limit is not None and len(responses) >= limit:
                break
        return responses

    # --- action handlers ---

    async def _prepare_source(self, event: SourcePushEvent) -> LocalRepo:
        source = event.repository or self.source
        if source is None:
            raise BuildFailed(description="No source repository configured", reason="source_unavailable")
        if self.clone:
            return await self.checkout.clone(source, branch=event.branch, commit_ref=event.commit_ref)
        return await self.checkout.from_existing_path(Path(source))

    async def _build(self, action: Action, inputs: Dict[str, Artifact], logs: List[str]) -> ImageReference:
        event: SourcePushEvent = inputs["source"].content
        try:
            checkout = await self._prepare_source(event)
        except GitExceptions as e:
            logs.extend(e.logs)
            raise BuildFailed(description=e.description, reason="source_unavailable", logs=logs) from e

        logs.extend(checkout.logs)
        try:
            return await self.build_job.run(action.environment, checkout, logs)
        finally:
            checkout.cleanup()

    async def _merge(self, action: Action, inputs: Dict[str, Artifact], logs: List[str]) -> ImageReference:
        images: Dict[str, ImageReference] = {}
        for artifact in inputs.values():
            image: ImageReference = artifact.content
            images[image.tag.rsplit("-", 1)[-1]] = image

        base_tag = action.base_tag or self.settings.image_tag
        missing = [arch for arch in ("amd64", "arm64") if arch not in images]
        if missing:
            raise MergeFailed(
                description=f"Merge inputs lack architectures: {', '.join(missing)}",
                reason="source_tag_missing",
                logs=logs,
            )
        return await self.merger.merge(
            self.settings.registry_uri,
            base_tag,
            images["amd64"].tag,
            images["arm64"].tag,
            logs,
        )

    async def _descriptor(self, action: Action, inputs: Dict[str, Artifact], logs: List[str]) -> str:
        descriptor = self.descriptor_builder.build(inputs["event"].content)

        if descriptor.image_uri not in self.built_images:
            if self.release_settings.require_known_build:
                raise DescriptorBuildFailed(
                    description=f"{descriptor.image_uri} was not produced by a build run",
                    reason="unknown_build",
                    logs=logs,
                )
            warning = f"{descriptor.image_uri} не сопоставлен ни с одним build-run'ом — деплоим как есть"
            logs.append(warning)
            self.warnings.append(warning)

        wire = descriptor.dumps()
        logs.append(f"imagedefinitions: {wire}")
        return wire

    async def _deploy(self, action: Action, inputs: Dict[str, Artifact], logs: List[str]):
        descriptor = DeploymentDescriptor.loads(inputs["imagedefinitions"].content)
        outcome = await self.driver.deploy(descriptor, self.service)
        logs.extend(outcome.logs)

        if outcome.state == "TimedOut":
            raise DeploymentTimedOut(
                description=f"Rollout of {descriptor.image_uri} did not converge",
                reason="rollout_timeout",
                logs=logs,
            )
        if outcome.state != "Succeeded":
            raise DeploymentFailed(
                description=f"Rollout of {descriptor.image_uri} failed",
                reason="rollout_failed",
                logs=logs,
            )
        return outcome

    # --- responses ---

    def _response(self, controller: PipelineController, run: Optional[PipelineRun]) -> RunResponse:
        summary = builder.summarize_pipeline(controller.definition)
        logs = list(self.logs)
        if run is None:
            return RunResponse(
                status="skipped",
                pipeline_summary=summary,
                warnings=["Событие не подходит под фильтр триггера — run не создан."],
                logs=logs,
            )

        for name, status in run.actions.items():
            logs.extend(f"[{name}] {line}" for line in status.logs)

        warnings = list(self.warnings)
        if run.status != "succeeded":
            warnings.append(f"Run {run.run_id}: {run.status} ({run.error or 'no error'})")
            click.echo(f"Run {run.run_id}: {run.status} ({run.error})", err=True)

        return RunResponse(
            status="ok" if run.status == "succeeded" else "error",
            run=run,
            pipeline_summary=summary,
            warnings=warnings,
            logs=logs,
        )
