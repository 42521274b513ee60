"""Generation backend built on pydantic-ai."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Union

from pydantic_ai import Agent, StructuredDict
from pydantic_ai.models import Model
from pydantic_ai.settings import ModelSettings

from .config import GenerationConfig
from .contracts import GenerationRequest, GenerationResponse
from .errors import GenerationCancelled, TransportError

logger = logging.getLogger(__name__)


class PydanticAIGenerator:
    """Run each request through a one-shot ``pydantic_ai.Agent``.

    ``model`` is anything pydantic-ai accepts: a ``provider:model`` string or
    a :class:`~pydantic_ai.models.Model` instance such as ``FunctionModel``.
    """

    def __init__(
        self,
        model: Union[str, Model] = "openai:gpt-4o-mini",
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = 120.0,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "PydanticAIGenerator":
        return cls(
            model=config.model,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )

    def _settings(self) -> ModelSettings:
        settings: ModelSettings = {}
        if self.max_tokens:
            settings["max_tokens"] = self.max_tokens
        if self.timeout_seconds:
            settings["timeout"] = self.timeout_seconds
        return settings

    def _agent(self, request: GenerationRequest) -> Agent[None, Any]:
        output_type: Any = str
        if request.json_schema:
            output_type = StructuredDict(
                request.json_schema["value"], name=request.json_schema.get("name")
            )
        return Agent(
            self.model,
            output_type=output_type,
            system_prompt=request.system_prompt,
            defer_model_check=True,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        token = request.cancel_token
        if token.cancelled:
            raise GenerationCancelled(f"Run {token.run_id} cancelled before start")

        try:
            agent = self._agent(request)
        except Exception as e:
            raise TransportError(f"Could not set up model {self.model}: {e}") from e

        run = asyncio.create_task(
            agent.run(request.user_prompt, model_settings=self._settings())
        )
        cancelled = asyncio.create_task(token.wait())
        try:
            done, _ = await asyncio.wait(
                {run, cancelled},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not run.done():
                run.cancel()

        if run not in done:
            if token.cancelled:
                raise GenerationCancelled(f"Run {token.run_id} cancelled")
            raise TransportError(
                f"Generation timed out after {self.timeout_seconds} seconds"
            )

        try:
            result = run.result()
        except Exception as e:
            logger.warning(f"Generation failed for run {token.run_id}: {e}")
            raise TransportError(str(e) or type(e).__name__) from e

        output = result.output
        if isinstance(output, dict):
            text = json.dumps(output, ensure_ascii=False, indent=2)
        else:
            text = str(output) if output is not None else ""
        if not text.strip():
            raise TransportError("Empty response from model")
        return GenerationResponse(text=text)
