"""Target store clients."""

from .base import (
    TargetStore,
    StoreError,
    DuplicateKeyError,
    ConstraintViolationError,
    RowNotFoundError,
)
from .memory_store import InMemoryTargetStore
from .rest_store import PostgRESTStore

__all__ = [
    "TargetStore",
    "StoreError",
    "DuplicateKeyError",
    "ConstraintViolationError",
    "RowNotFoundError",
    "InMemoryTargetStore",
    "PostgRESTStore",
]
