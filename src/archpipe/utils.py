import fnmatch
import functools
import asyncio
from datetime import datetime, timezone


def async_click(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def matches(value: str, pattern: str) -> bool:
    """
    Сопоставление ветки/тега с фильтром в стиле shell (prod, release-*, v*).
    Пустой фильтр или "*" пропускает всё.
    """
    if not pattern or pattern == "*":
        return True
    return fnmatch.fnmatchcase(value, pattern)
