import json
import sys
from pathlib import Path

import click

from archpipe import settings
from archpipe.core.config import PipelineSettings, ReleaseSettings
from archpipe.core.core import ArchPipeCore
from archpipe.core.models import SourcePushEvent
from archpipe.core.services.builders import pipeline as builder
from archpipe.core.services.descriptor import ReleaseDescriptorBuilder
from archpipe.core.services.registry import DockerCliRegistry
from archpipe.exception import PipelineException
from archpipe.utils import async_click


@click.group()
def main():
    """Multi-arch сборка образа и раскатка на сервис."""


@main.command()
@click.argument("repository")
@click.argument("branch", default="prod")
@click.option("--commit", "commit_ref", default="HEAD", help="Ревизия для сборки")
@click.option("--registry", "registry_uri", envvar="ARCHPIPE_REGISTRY_URI", required=True, help="URI репозитория в registry")
@click.option("--tag", "image_tag", default=None, help="Базовый тег образа (по умолчанию latest)")
@click.option("--dockerfile", "dockerfile_path", default=None, help="Путь к Dockerfile в репозитории")
@click.option("--branch-filter", default=None, help="Фильтр веток, запускающих сборку")
@click.option("--script", "build_script", default=None, help="Свой скрипт сборки вместо docker buildx")
@click.option("--no-clone", is_flag=True, help="Собирать прямо из локальной директории")
@click.option("-o", "--output", default=None, help="Куда сохранить JSON с результатом run'а")
@async_click
async def build(
    repository: str,
    branch: str,
    commit_ref: str,
    registry_uri: str,
    image_tag: str,
    dockerfile_path: str,
    branch_filter: str,
    build_script: str,
    no_clone: bool,
    output: str,
):
    """Собрать amd64 + arm64 и опубликовать manifest list."""
    click.echo(settings.LOGO + "\n")

    pipeline_settings = PipelineSettings.from_env(
        registry_uri=registry_uri,
        image_tag=image_tag,
        dockerfile_path=dockerfile_path,
        branch_filter=branch_filter,
        build_script=build_script,
    )
    core = ArchPipeCore(
        pipeline_settings,
        registry=DockerCliRegistry(registry_uri),
        source=repository,
        clone=not no_clone,
    )
    result = await core.run_build(
        SourcePushEvent(branch=branch, commit_ref=commit_ref, repository=repository)
    )

    click.echo(result.pipeline_summary.description)
    for warning in result.warnings:
        click.echo(warning, err=True)

    if output:
        try:
            with open(output, "w", encoding="utf-8") as f:
                f.write(result.model_dump_json(indent=2))
        except OSError as e:
            click.echo(f"Не удалось сохранить результат в файл '{output}': {e}", err=True)
        else:
            click.echo(f"Результат сохранён в файл: {output}", err=True)

    if result.status == "error":
        run = result.run
        for line in run.diagnostics(run.failed_action):
            click.echo(line, err=True)
        sys.exit(1)


@main.command()
@click.argument("event_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--container-name", default=None, help="Имя контейнера в сервисе")
@click.option("-o", "--output", default=".", help="Директория для imagedefinitions.json")
def descriptor(event_file: str, container_name: str, output: str):
    """Событие пуша registry (JSON) -> imagedefinitions.json."""
    release_settings = ReleaseSettings.from_env()
    if container_name:
        release_settings = release_settings.model_copy(update={"container_name": container_name})

    try:
        with open(event_file, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Не удалось прочитать событие '{event_file}': {e}")

    try:
        result = ReleaseDescriptorBuilder(release_settings).build(raw)
    except PipelineException as e:
        raise click.ClickException(f"{e.kind}: {e.description}")

    path = Path(output) / "imagedefinitions.json"
    path.write_text(result.dumps(), encoding="utf-8")
    click.echo(result.dumps())
    click.echo(f"imagedefinitions сохранён в файл: {path}", err=True)


@main.command()
@click.option("--pipeline", "kind", type=click.Choice(["build", "release"]), default="build")
@click.option("--registry", "registry_uri", envvar="ARCHPIPE_REGISTRY_URI", default="registry.local/app")
def summary(kind: str, registry_uri: str):
    """Показать стадии пайплайна."""
    if kind == "build":
        definition, logs = builder.build_container_pipeline(
            PipelineSettings.from_env(registry_uri=registry_uri)
        )
    else:
        definition, logs = builder.build_release_pipeline(ReleaseSettings.from_env())
    for line in logs:
        click.echo(line)
    click.echo(builder.summarize_pipeline(definition).description)


if __name__ == "__main__":
    main()
