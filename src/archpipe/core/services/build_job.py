from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import click

from archpipe.core.models import BuildEnvironment, ImageReference
from archpipe.exception import BuildFailed

from .analyzer.core import resolve_dockerfile
from .git_module.models import LocalRepo
from .process import ProcessResult, run_process, run_script


# Маркеры отказа registry в выводе docker push
_PUSH_REJECTED = re.compile(
    r"(denied|unauthorized|authentication required|no basic auth credentials|"
    r"not authorized|push rejected|forbidden)",
    re.IGNORECASE,
)


class BuildRunner(Protocol):
    """
    Внешний build runner: собирает и пушит образ.
    Принимает REPOSITORY_URI, IMAGE_TAG, PLATFORM, PATH_TO_DOCKERFILE в env.
    """

    async def run(self, env: Dict[str, str], cwd: Path) -> ProcessResult: ...


class ShellBuildRunner:
    """
    Runner через shell: либо встроенный скрипт buildx (ci_scripts.make_build_script),
    либо пользовательский скрипт сборки из репозитория (аналог buildspec).
    """

    def __init__(self, script_path: Optional[str] = None, shell: str = "sh") -> None:
        self.script_path = script_path
        self.shell = shell

    async def run(self, env: Dict[str, str], cwd: Path) -> ProcessResult:
        if self.script_path:
            return await run_process([self.shell, self.script_path], env=env, cwd=cwd)
        return await run_script("build", env=env, cwd=cwd, shell=self.shell)


def classify_failure(output: List[str]) -> str:
    """Причина BuildFailed по выводу runner'а; код выхода уже ненулевой."""
    if any(_PUSH_REJECTED.search(line) for line in output):
        return "push_rejected"
    return "build_exit_nonzero"


class ArchitectureBuildJob:
    """
    Одна сборка под одну платформу: <base_tag>-<arch> -> registry.
    Повторов нет — решение о перезапуске принимает контроллер (новым run'ом).
    """

    def __init__(self, runner: BuildRunner) -> None:
        self.runner = runner

    async def run(
        self,
        environment: BuildEnvironment,
        source: LocalRepo,
        logs: List[str],
    ) -> ImageReference:
        """
        :raises BuildFailed: dockerfile_not_found | build_exit_nonzero | push_rejected
        """
        image = environment.image
        logs.append(f"Сборка {image.uri} для {environment.platform}")

        dockerfile = resolve_dockerfile(source.repo_path, environment.dockerfile_path, logs)
        env = environment.runner_env()
        env["PATH_TO_DOCKERFILE"] = dockerfile.path

        try:
            result = await self.runner.run(env, source.repo_path)
        except OSError as e:
            logs.append(f"Не удалось запустить build runner: {e}")
            raise BuildFailed(
                description=f"Build runner for {environment.platform} failed to start",
                reason="build_exit_nonzero",
                logs=logs,
            ) from e

        logs.extend(result.output)

        if not result.ok:
            reason = classify_failure(result.output)
            logs.append(f"Runner завершился с кодом {result.exit_code} ({reason})")
            click.echo(f"Сборка {image.uri} завершилась ошибкой: {reason}", err=True)
            raise BuildFailed(
                description=f"Build of {image.uri} failed with exit code {result.exit_code}",
                reason=reason,
                logs=logs,
            )

        logs.append(f"Образ {image.uri} собран и запушен")
        return image
