from git import (
    Repo as GitRepo,
    GitCommandError,
    InvalidGitRepositoryError,
    NoSuchPathError,
)

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from archpipe.core.config import BASE_TEMP_DIR

from .models import LocalRepo
from .utils import ensure_base_temp_dir, PathLike
from .exceptions import GitCloneError, GitLocalPathError


class SourceCheckout:
    """
    Подготовка исходников для сборки образа:

    - clone(repo, branch, commit_ref)  — клон ветки и checkout конкретной ревизии (GitPython);
    - from_existing_path(path)         — уже существующая директория (локальный запуск).

    Оба метода возвращают LocalRepo; временные клоны удаляются через cleanup().
    """

    def __init__(self, default_branch: str = "prod", workdir: Optional[PathLike] = None) -> None:
        self.default_branch = default_branch
        self.workdir = Path(workdir) if workdir is not None else BASE_TEMP_DIR

    async def clone(
        self,
        repo: str,
        branch: Optional[str] = None,
        commit_ref: Optional[str] = None,
    ) -> LocalRepo:
        """
        Клонирует ветку во временную папку и, если передан commit_ref,
        переключается на эту ревизию. GitPython блокирующий — уводим в поток.

        :raises GitCloneError: при любых ошибках клонирования/checkout.
        """
        if branch is None:
            branch = self.default_branch
        return await asyncio.to_thread(self._clone_sync, repo, branch, commit_ref)

    def _clone_sync(self, repo: str, branch: str, commit_ref: Optional[str]) -> LocalRepo:
        logs: List[str] = []

        base_temp = ensure_base_temp_dir(self.workdir)
        temp_root = Path(tempfile.mkdtemp(prefix="src_", dir=base_temp))
        repo_dir = temp_root / "repo"

        logs.append(f"Создаём временную папку: {temp_root}")
        logs.append(f"Клонируем репозиторий {repo!r} (ветка {branch}) в {repo_dir}")

        repo_obj: GitRepo | None = None
        try:
            # без depth=1: нужная ревизия может быть не последней в ветке
            repo_obj = GitRepo.clone_from(repo, repo_dir, branch=branch)
            if commit_ref:
                repo_obj.git.checkout(commit_ref)
                logs.append(f"Checkout ревизии {commit_ref}")
            resolved = repo_obj.head.commit.hexsha
            logs.append(f"Исходники готовы: {repo_dir} @ {resolved}")
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError, ValueError) as e:
            logs.append("GitPython: ошибка при clone/checkout.")
            logs.append(str(e))
            shutil.rmtree(temp_root, ignore_errors=True)
            raise GitCloneError(repository=repo, branch=branch, commit_ref=commit_ref, logs=logs) from e
        finally:
            if repo_obj is not None:
                repo_obj.close()

        return LocalRepo(
            root_dir=temp_root,
            repo_path=repo_dir,
            logs=logs,
            commit_ref=resolved,
            is_temporary=True,
        )

    async def from_existing_path(self, path: PathLike) -> LocalRepo:
        """
        Использует существующую директорию как исходники.
        Ничего не копирует; если это git-репозиторий — запоминает HEAD.

        :raises GitLocalPathError: если путь не существует или не является директорией.
        """
        logs: List[str] = []

        repo_path = Path(path)
        logs.append(f"Используем существующий путь как исходники: {repo_path}")

        if not repo_path.exists():
            logs.append("Ошибка: указанный путь не существует.")
            raise GitLocalPathError(path=str(repo_path), logs=logs)
        if not repo_path.is_dir():
            logs.append("Ошибка: указанный путь не является директорией.")
            raise GitLocalPathError(path=str(repo_path), logs=logs)

        commit_ref: Optional[str] = None
        if (repo_path / ".git").exists():
            try:
                repo_obj = GitRepo(repo_path)
                try:
                    commit_ref = repo_obj.head.commit.hexsha
                finally:
                    repo_obj.close()
                logs.append(f"Обнаружен git-репозиторий, HEAD = {commit_ref}")
            except (InvalidGitRepositoryError, NoSuchPathError, ValueError):
                logs.append(
                    "Найдена директория .git, но GitPython не смог её прочитать. "
                    "Используем как обычную папку проекта."
                )
        else:
            logs.append("В директории нет .git — ревизия неизвестна.")

        # is_temporary = False — cleanup() не удалит реальный проект
        return LocalRepo(
            root_dir=repo_path,
            repo_path=repo_path,
            logs=logs,
            commit_ref=commit_ref,
            is_temporary=False,
        )
