# core/ci_scripts.py
from __future__ import annotations

from typing import Dict, List, Literal

from .models import ARCHITECTURES


ScriptKind = Literal["build", "manifest"]


def make_build_script() -> List[str]:
    """
    Скрипт build runner'а для одной архитектуры.
    Все параметры приходят через окружение:
      REPOSITORY_URI, IMAGE_TAG, PLATFORM, PATH_TO_DOCKERFILE.
    Код выхода — единственный сигнал успеха.
    """
    return [
        "set -eu",
        'echo "Build $REPOSITORY_URI:$IMAGE_TAG for $PLATFORM"',
        # buildx нужен для сборки под чужую платформу (arm64 на amd64-раннере и наоборот)
        (
            'docker buildx build --platform "$PLATFORM" '
            '-f "$PATH_TO_DOCKERFILE" '
            '-t "$REPOSITORY_URI:$IMAGE_TAG" '
            "--provenance=false --push ."
        ),
        'echo "Pushed $REPOSITORY_URI:$IMAGE_TAG"',
    ]


def make_manifest_script(registry_uri: str, base_tag: str, sources: Dict[str, str]) -> List[str]:
    """
    Скрипт публикации manifest list: base_tag -> {arch: tag}.
    --amend делает повторный запуск идемпотентным (перезапись тем же содержимым).
    """
    target = f"{registry_uri}:{base_tag}"
    cmds: List[str] = [
        "set -eu",
        f'echo "Manifest list {target}"',
    ]

    refs = " ".join(f"{registry_uri}:{tag}" for tag in sources.values())
    cmds.append(f"docker manifest create --amend {target} {refs}")

    for arch, tag in sources.items():
        platform = ARCHITECTURES.get(arch, f"linux/{arch}")
        os_name, _, arch_name = platform.partition("/")
        cmds.append(
            f"docker manifest annotate --os {os_name} --arch {arch_name} "
            f"{target} {registry_uri}:{tag}"
        )

    cmds.append(f"docker manifest push {target}")
    return cmds


def make_script(kind: ScriptKind, **params) -> str:
    """
    Склеивает команды в один shell-скрипт для `sh -c`.
    """
    if kind == "build":
        cmds = make_build_script()
    elif kind == "manifest":
        cmds = make_manifest_script(**params)
    else:
        raise ValueError(f"Unsupported script kind: {kind}")
    return "\n".join(cmds) + "\n"
