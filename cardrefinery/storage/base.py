"""Base key-value store interface for persisted refinery state."""

from __future__ import annotations

import abc
from typing import List, Optional

from ..constants import STORAGE_NAMESPACE


class BaseKeyValueStore(metaclass=abc.ABCMeta):
    """Abstract async store of JSON text blobs keyed by string.

    Keys are scoped to ``namespace`` so several applications can share one
    backend.
    """

    def __init__(self, namespace: str = STORAGE_NAMESPACE) -> None:
        self.namespace = namespace

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored text for ``key`` or ``None``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        raise NotImplementedError

    @abc.abstractmethod
    async def remove(self, key: str) -> None:
        """Delete ``key``. Missing keys are ignored."""
        raise NotImplementedError

    @abc.abstractmethod
    async def keys(self) -> List[str]:
        """Return every key in this store's namespace."""
        raise NotImplementedError

    @property
    def description(self) -> str:
        return f"{type(self).__name__}(namespace={self.namespace})"
