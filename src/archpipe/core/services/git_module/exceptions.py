from typing import List, Optional

from archpipe.exception import PipelineException


class GitExceptions(PipelineException):
    """
    Базовое исключение подготовки исходников.
    """

    kind = "SourceError"

    def __init__(
        self,
        *args,
        description: str = "Something happend when work with Git",
        logs: Optional[List[str]] = None,
    ) -> None:
        super().__init__(*args, description=description, reason="source_unavailable", logs=logs)


class GitCloneError(GitExceptions):
    """
    Ошибка при клонировании или checkout нужной ревизии.
    """

    def __init__(
        self,
        repository: str,
        branch: str,
        commit_ref: Optional[str] = None,
        logs: Optional[List[str]] = None,
        *args,
    ) -> None:
        description = f"Error to clone repository {repository} in branch {branch}"
        if commit_ref:
            description += f" at {commit_ref}"
        super().__init__(*args, description=description, logs=logs)
        self.repository = repository
        self.branch = branch
        self.commit_ref = commit_ref


class GitLocalPathError(GitExceptions):
    """
    Ошибка при использовании локального пути до исходников.
    """

    def __init__(
        self,
        path: str,
        logs: Optional[List[str]] = None,
        *args,
    ) -> None:
        description = f"Error to use local repository path {path}"
        super().__init__(*args, description=description, logs=logs)
        self.path = path
