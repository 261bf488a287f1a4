import os
import stat
from pathlib import Path
from typing import Union


PathLike = Union[str, Path]

def on_rm_error(func, path, exc_info):
    """
    Обработчик ошибок для shutil.rmtree:
    снимает флаг read-only (.git/objects/pack на Windows) и повторяет удаление.
    Если и это не помогло — cleanup best-effort, оставляем мусор во временной папке.
    """
    try:
        os.chmod(path, stat.S_IWRITE)
        func(path)
    except OSError:
        pass

def ensure_base_temp_dir(path: PathLike) -> Path:
    """
    Гарантирует, что рабочий каталог существует, и возвращает его как Path.
    """
    base = Path(path)
    base.mkdir(parents=True, exist_ok=True)
    return base
