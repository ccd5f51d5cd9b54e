"""ORM base, models and engine helpers for the admission-control tables."""

from . import models  # noqa: F401
from .base import Base  # noqa: F401
from .session import (  # noqa: F401
    dispose_engine,
    get_async_engine,
    get_optional_session_maker,
    get_session_maker,
)

__all__ = [
    "Base",
    "dispose_engine",
    "get_async_engine",
    "get_optional_session_maker",
    "get_session_maker",
    "models",
]
