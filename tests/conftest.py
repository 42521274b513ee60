"""Shared fixtures for refinery tests."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence, Union

import pytest

from cardrefinery.contracts import GenerationRequest, GenerationResponse
from cardrefinery.engine import PipelineEngine
from cardrefinery.persistence import SessionRepository, VersionedStore
from cardrefinery.storage import InMemoryKeyValueStore

Reply = Union[str, GenerationResponse, Exception]


class ScriptedGenerator:
    """Generator double returning canned replies in order.

    When ``gate`` is set every call blocks until the event fires, which lets
    tests abort a run while the backend is still working.
    """

    def __init__(self, replies: Sequence[Reply] = (), default: Reply = "ok") -> None:
        self.replies: List[Reply] = list(replies)
        self.default = default
        self.requests: List[GenerationRequest] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, GenerationResponse):
            return reply
        return GenerationResponse(text=reply)


class RecordingNotifier:
    def __init__(self) -> None:
        self.infos: List[str] = []
        self.errors: List[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


@pytest.fixture
def v2_card() -> dict:
    return {
        "name": "Alice",
        "description": "A curious girl who follows {{char}}'s rabbit.",
        "personality": "Inquisitive, polite",
        "first_mes": "Oh! Hello there.",
        "scenario": "",
        "mes_example": "",
        "data": {
            "system_prompt": "",
            "creator_notes": "Classic.",
            "alternate_greetings": ["Curiouser and curiouser!", "Who are you?", "Off with it!"],
            "extensions": {"depth_prompt": {"prompt": "Stay whimsical.", "depth": 4, "role": "system"}},
            "character_book": {
                "name": "Wonderland",
                "entries": [
                    {"keys": ["rabbit"], "comment": "White Rabbit", "enabled": True},
                    {"keys": ["queen", "hearts"], "enabled": False},
                ],
            },
        },
    }


@pytest.fixture
def v1_card() -> dict:
    return {
        "name": "Bob",
        "description": "A builder.",
        "personality": "Cheerful",
        "system_prompt": "Speak plainly.",
        "alternate_greetings": ["Can we fix it?"],
        "extensions": {"depth_prompt": {"prompt": "Be upbeat.", "depth": 2, "role": "user"}},
    }


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def repository(kv_store) -> SessionRepository:
    return SessionRepository(VersionedStore(kv_store))


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine(repository, generator, notifier) -> PipelineEngine:
    return PipelineEngine(repository, generator, notifier=notifier)
