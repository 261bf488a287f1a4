from .core import SourceCheckout
from .models import LocalRepo

from .exceptions import (
    GitExceptions,
    GitCloneError,
    GitLocalPathError,
)

__all__ = [
    "SourceCheckout",
    "LocalRepo",
    "GitExceptions",
    "GitCloneError",
    "GitLocalPathError",
]
