"""Contracts between the refinery core and its external collaborators."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag scoped to a single stage run.

    A token is created for every run and never reused. Generators poll
    :attr:`cancelled` or await :meth:`wait` to stop producing output.
    """

    def __init__(self) -> None:
        self.run_id = str(uuid.uuid4())
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.debug(f"Cancellation requested for run_id={self.run_id}")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class GenerationRequest(BaseModel):
    """A single request issued to the generation backend."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    system_prompt: str
    user_prompt: str
    json_schema: Optional[Dict[str, Any]] = None
    cancel_token: CancelToken = Field(default_factory=CancelToken)


class GenerationResponse(BaseModel):
    """Result of a generation call: either ``text`` or ``error``."""

    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None


@runtime_checkable
class Generator(Protocol):
    """Generation backend.

    Implementations must honour ``request.cancel_token`` promptly and issue
    at most one backend call per :meth:`generate` invocation. They may raise
    :class:`~cardrefinery.errors.TransportError` or
    :class:`~cardrefinery.errors.GenerationCancelled`.
    """

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Produce a completion for ``request``."""


class DocumentSource(Protocol):
    """Read-only access to the host's document store."""

    def get_current_document(self) -> Optional[Mapping[str, Any]]:
        """Return the document being edited, if any."""

    def get_field_value(self, document: Mapping[str, Any], path: str) -> Any:
        """Return the raw value at dotted ``path``."""


class DictDocumentSource:
    """Document source backed by an in-process mapping of documents."""

    def __init__(
        self,
        documents: Optional[Dict[str, Mapping[str, Any]]] = None,
        current: Optional[str] = None,
    ) -> None:
        self._documents: Dict[str, Mapping[str, Any]] = dict(documents or {})
        self.current = current

    def add(self, document_id: str, document: Mapping[str, Any]) -> None:
        self._documents[document_id] = document

    def get(self, document_id: str) -> Optional[Mapping[str, Any]]:
        return self._documents.get(document_id)

    def get_current_document(self) -> Optional[Mapping[str, Any]]:
        if self.current is None:
            return None
        return self._documents.get(self.current)

    def get_field_value(self, document: Mapping[str, Any], path: str) -> Any:
        from .fields import get_by_path

        return get_by_path(document, path)


class NotificationSink(Protocol):
    """One-way channel for user-visible status messages."""

    def info(self, message: str) -> None:
        ...

    def error(self, message: str) -> None:
        ...


class LoggingNotifier:
    """Notification sink that forwards messages to the logging system."""

    def __init__(self, name: str = "cardrefinery.notify") -> None:
        self._logger = logging.getLogger(name)

    def info(self, message: str) -> None:
        self._logger.info(message)

    def error(self, message: str) -> None:
        self._logger.error(message)
