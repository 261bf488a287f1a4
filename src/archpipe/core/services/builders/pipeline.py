import click

from typing import List, Tuple

from archpipe.core.config import PipelineSettings, ReleaseSettings
from archpipe.core.models import ARCHITECTURES, BuildEnvironment, PipelineSummary
from archpipe.model import Action, PipelineDefinition, Stage


BUILD_PIPELINE = "container-build"
RELEASE_PIPELINE = "release"


def build_environments(settings: PipelineSettings) -> List[BuildEnvironment]:
    """
    Одна параметризованная BuildEnvironment на архитектуру
    вместо продублированных блоков arm64/amd64.
    """
    return [
        BuildEnvironment(
            registry_uri=settings.registry_uri,
            base_tag=settings.image_tag,
            platform=platform,
            dockerfile_path=settings.dockerfile_path,
        )
        for platform in ARCHITECTURES.values()
    ]


def build_container_pipeline(settings: PipelineSettings) -> Tuple[PipelineDefinition, List[str]]:
    """
    Build-пайплайн:
      build  — fan-out: build_amd64 || build_arm64 (вход: source)
      merge  — fan-in: manifest list <tag> из обоих архитектурных тегов

    Возвращает (PipelineDefinition, logs).
    """
    logs: List[str] = []

    build_actions: List[Action] = []
    for env in build_environments(settings):
        build_actions.append(
            Action(
                name=f"build_{env.arch}",
                kind="build",
                inputs=["source"],
                output=f"image_{env.arch}",
                environment=env,
            )
        )
        logs.append(f"Добавлена сборка {env.platform} -> {env.image.uri}")

    merge_action = Action(
        name="merge_manifest",
        kind="merge",
        # барьер задан явным членством в стадии build, а не порядком объявления
        inputs=[action.output for action in build_actions],
        output="image_multiarch",
        base_tag=settings.image_tag,
    )
    logs.append(f"Добавлен manifest list {settings.registry_uri}:{settings.image_tag}")

    pipeline = PipelineDefinition(
        name=BUILD_PIPELINE,
        stages=[
            Stage(name="build", actions=build_actions),
            Stage(name="merge", actions=[merge_action]),
        ],
    )
    click.echo(f"Пайплайн {pipeline.name}: {len(pipeline.stages)} стадии")
    return pipeline, logs


def build_release_pipeline(settings: ReleaseSettings) -> Tuple[PipelineDefinition, List[str]]:
    """
    Release-пайплайн:
      descriptor — событие registry -> imagedefinitions
      deploy     — rolling update сервиса
    """
    logs: List[str] = [
        f"Release по тегам {settings.tag_pattern!r}, контейнер {settings.container_name}"
    ]
    pipeline = PipelineDefinition(
        name=RELEASE_PIPELINE,
        stages=[
            Stage(
                name="descriptor",
                actions=[
                    Action(
                        name="build_descriptor",
                        kind="descriptor",
                        inputs=["event"],
                        output="imagedefinitions",
                    )
                ],
            ),
            Stage(
                name="deploy",
                actions=[
                    Action(
                        name="deploy_service",
                        kind="deploy",
                        inputs=["imagedefinitions"],
                    )
                ],
            ),
        ],
    )
    return pipeline, logs


def summarize_pipeline(pipeline: PipelineDefinition) -> PipelineSummary:
    """
    Краткое резюме пайплайна для CLI.
    """
    stages = [stage.name for stage in pipeline.stages]
    action_names = pipeline.action_names()
    stages_count = len(stages)
    actions_count = len(action_names)

    if stages_count == 0:
        description = "Пайплайн пустой."
    else:
        layout = " -> ".join(
            f"{stage.name}[{' || '.join(a.name for a in stage.actions)}]"
            for stage in pipeline.stages
        )
        description = (
            f"Пайплайн {pipeline.name}: {stages_count} стадий, {actions_count} actions: {layout}"
        )

    return PipelineSummary(
        pipeline=pipeline.name,
        stages_count=stages_count,
        actions_count=actions_count,
        stages=stages,
        action_names=action_names,
        description=description,
    )
