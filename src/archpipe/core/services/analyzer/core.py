from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List

from archpipe.core.models import DockerfileInfo
from archpipe.exception import BuildFailed


# Директории, которые игнорируем при поиске Dockerfile'ов
IGNORED_DIRS = {
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    ".venv",
    "venv",
    "__pycache__",
    "dist",
    "build",
    "target",
    ".idea",
    ".vscode",
}


def _iter_files(base_dir: Path) -> Iterable[Path]:
    for root, dirs, files in os.walk(base_dir):
        dirs[:] = [d for d in dirs if d not in IGNORED_DIRS]
        for filename in files:
            yield Path(root) / filename


def detect_dockerfiles(repo_path: Path) -> List[DockerfileInfo]:
    """
    Находит Dockerfile'ы в исходниках (Dockerfile, Dockerfile.*, Dockerfile-*).
    Используется для подсказки в диагностике, когда заданный путь не найден.
    """
    dockerfiles: List[DockerfileInfo] = []

    for p in _iter_files(repo_path):
        name = p.name.lower()
        if not (name == "dockerfile" or name.startswith(("dockerfile.", "dockerfile-"))):
            continue

        rel = p.relative_to(repo_path)
        context = rel.parent.as_posix()
        dockerfiles.append(
            DockerfileInfo(path=rel.as_posix(), context=context or ".")
        )

    return sorted(dockerfiles, key=lambda df: df.path)


def resolve_dockerfile(repo_path: Path, dockerfile_path: str, logs: List[str]) -> DockerfileInfo:
    """
    Проверяет, что PATH_TO_DOCKERFILE указывает на файл внутри исходников.

    :raises BuildFailed: reason="dockerfile_not_found"
    """
    root = repo_path.resolve()
    candidate = (root / dockerfile_path).resolve()

    if root != candidate and root not in candidate.parents:
        logs.append(f"Путь {dockerfile_path!r} выходит за пределы исходников.")
        raise BuildFailed(
            description=f"Dockerfile {dockerfile_path} is outside of source tree",
            reason="dockerfile_not_found",
            logs=logs,
        )

    if not candidate.is_file():
        logs.append(f"Dockerfile {dockerfile_path!r} не найден в {repo_path}.")
        found = detect_dockerfiles(repo_path)
        if found:
            logs.append(
                "Найденные Dockerfile'ы: " + ", ".join(df.path for df in found)
            )
        raise BuildFailed(
            description=f"Dockerfile {dockerfile_path} not found",
            reason="dockerfile_not_found",
            logs=logs,
        )

    rel = candidate.relative_to(root)
    logs.append(f"Используем Dockerfile: {rel.as_posix()}")
    return DockerfileInfo(path=rel.as_posix(), context=rel.parent.as_posix() or ".")
