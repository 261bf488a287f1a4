import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from .utils import on_rm_error

@dataclass
class LocalRepo:
    """
    Исходники, подготовленные для сборки.

    root_dir     — корневая папка (для клона — временная директория).
    repo_path    — путь к проекту, из которого запускается docker build.
    commit_ref   — ревизия, на которую сделан checkout (если известна).
    logs         — текстовые логи шагов подготовки.
    is_temporary — если True, cleanup() удалит root_dir; если False — нет.
    """

    root_dir: Path
    repo_path: Path
    logs: List[str]
    commit_ref: Optional[str] = None
    is_temporary: bool = True

    def cleanup(self) -> None:
        if self.is_temporary and self.root_dir.exists():
            shutil.rmtree(self.root_dir, onerror=on_rm_error)
