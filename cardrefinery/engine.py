"""Pipeline engine: stage state machine, generation and result recording."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import PromptsConfig
from .constants import STAGES, StageName, StageStatus
from .contracts import (
    CancelToken,
    GenerationRequest,
    GenerationResponse,
    Generator,
    LoggingNotifier,
    NotificationSink,
)
from .errors import (
    GenerationCancelled,
    InvalidTransitionError,
    NotFoundError,
    StageAlreadyRunningError,
    TransportError,
    ValidationError,
)
from .events import ChangeNotifier
from .models import Session, StageResult, StructuredOutputSchema, empty_stage_results
from .persistence.repository import SessionRepository
from .prompt import build_user_prompt, system_prompt
from .registry import PresetRegistry
from .schema import parse_structured_response
from .selection import effective_selection

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[StageStatus, Tuple[StageStatus, ...]] = {
    "pending": ("running",),
    "running": ("complete", "error", "pending"),
    "complete": ("running",),
    "error": ("running",),
}


def derive_stage_status(session: Session) -> Dict[StageName, StageStatus]:
    """Stage statuses implied by the stored results of ``session``."""
    status: Dict[StageName, StageStatus] = {}
    for stage in STAGES:
        result = session.stage_results.get(stage)
        if result is None:
            status[stage] = "pending"
        else:
            status[stage] = "error" if result.error else "complete"
    return status


def _discard_late_result(task: "asyncio.Task[Any]") -> None:
    # retrieve the outcome so abandoned runs do not log unhandled errors
    if not task.cancelled():
        task.exception()


class PipelineEngine:
    """Run pipeline stages for sessions and record their results.

    Holds the transient per-session stage status and the active run's
    cancel token. Results are written through the repository.
    """

    def __init__(
        self,
        repository: SessionRepository,
        generator: Generator,
        registry: Optional[PresetRegistry] = None,
        prompts: Optional[PromptsConfig] = None,
        notifier: Optional[NotificationSink] = None,
        events: Optional[ChangeNotifier] = None,
    ) -> None:
        self._repository = repository
        self._generator = generator
        self._registry = registry or PresetRegistry()
        self._prompts = prompts or PromptsConfig()
        self._notifier = notifier or LoggingNotifier()
        self.events = events or ChangeNotifier()
        self._status: Dict[str, Dict[StageName, StageStatus]] = {}
        self._active: Dict[str, Tuple[StageName, CancelToken]] = {}

    # ------------------------------------------------------------------
    # Status
    def stage_status(self, session: Session) -> Dict[StageName, StageStatus]:
        if session.id not in self._status:
            self._status[session.id] = derive_stage_status(session)
        return dict(self._status[session.id])

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active

    def running_stage(self, session_id: str) -> Optional[StageName]:
        active = self._active.get(session_id)
        return active[0] if active else None

    def forget(self, session_id: str) -> None:
        """Drop transient status kept for ``session_id`` unless a stage is running."""
        if session_id not in self._active:
            self._status.pop(session_id, None)

    def _transition(self, session: Session, stage: StageName, new: StageStatus) -> None:
        statuses = self._status.setdefault(session.id, derive_stage_status(session))
        current = statuses[stage]
        if new not in TRANSITIONS[current]:
            raise InvalidTransitionError(f"{stage}: {current} -> {new} is not allowed")
        statuses[stage] = new
        logger.debug(f"Session {session.id} stage {stage}: {current} -> {new}")
        self.events.emit(
            "stage_status_changed",
            session_id=session.id,
            stage=stage,
            data={"from": current, "to": new},
        )

    # ------------------------------------------------------------------
    # Request building
    def resolve_schema(self, session: Session, stage: StageName) -> Optional[StructuredOutputSchema]:
        config = session.config_for(stage)
        if not config.use_structured_output:
            return None
        schema = self._registry.stage_schema(config)
        if schema is None:
            raise ValidationError("Structured output is enabled but no schema is configured")
        return schema

    def build_prompts(
        self,
        session: Session,
        stage: StageName,
        document: Optional[Mapping[str, Any]],
        is_refinement: bool = False,
    ) -> Tuple[str, str]:
        """Return the ``(system, user)`` prompts for a stage run."""
        user = build_user_prompt(
            document,
            effective_selection(session.stage_fields, stage),
            stage,
            instructions=self._registry.stage_prompt(session.config_for(stage)),
            previous_results=session.stage_results,
            iteration_count=session.iteration_count,
            guidance=session.user_guidance,
            is_refinement=is_refinement,
        )
        return system_prompt(self._prompts, stage, is_refinement), user

    # ------------------------------------------------------------------
    # Execution
    async def run_stage(
        self,
        session: Session,
        stage: StageName,
        document: Optional[Mapping[str, Any]],
        *,
        is_refinement: bool = False,
    ) -> Optional[StageResult]:
        """Run one stage and record its result.

        Returns ``None`` if the run was cancelled; nothing is recorded then.

        Raises:
            StageAlreadyRunningError: another stage of ``session`` is running.
        """
        if session.id in self._active:
            running, _ = self._active[session.id]
            raise StageAlreadyRunningError(
                f"Stage {running} is already running for session {session.id}"
            )

        self._transition(session, stage, "running")
        token = CancelToken()
        self._active[session.id] = (stage, token)
        user_prompt = ""
        try:
            try:
                system, user_prompt = self.build_prompts(session, stage, document, is_refinement)
                schema = self.resolve_schema(session, stage)
                request = GenerationRequest(
                    system_prompt=system,
                    user_prompt=user_prompt,
                    json_schema=schema.to_dict() if schema else None,
                    cancel_token=token,
                )
                logger.debug(f"Starting {stage} for session {session.id} run_id={token.run_id}")
                response = await self._generate(request)
                if response is None:
                    raise GenerationCancelled(f"Run {token.run_id} cancelled")
                if not response.ok:
                    raise TransportError(response.error or "Empty response from model")
            except GenerationCancelled:
                self._transition(session, stage, "pending")
                logger.info(f"Stage {stage} cancelled for session {session.id}")
                self._notifier.info("Generation cancelled")
                return None
            except (ValidationError, TransportError) as e:
                return await self._record_error(session, stage, user_prompt, str(e))
            except Exception as e:
                logger.exception(f"Unexpected failure running {stage} for session {session.id}")
                return await self._record_error(session, stage, user_prompt, str(e) or type(e).__name__)

            if schema is not None:
                self._check_structured(stage, response.text or "", schema)

            result = StageResult(
                stage=stage,
                input=user_prompt,
                output=response.text,
                guidance=session.user_guidance or None,
            )
            await self._commit(session, result, count_iteration=True)
            self._transition(session, stage, "complete")
            logger.info(f"Stage {stage} completed for session {session.id}")
            self.events.emit(
                "stage_completed", session_id=session.id, stage=stage, data={"ok": True}
            )
            return result
        finally:
            if self._active.get(session.id, (None, None))[1] is token:
                del self._active[session.id]
            # task cancellation or a failed write must not leave the stage running
            if self._status.get(session.id, {}).get(stage) == "running":
                self._transition(session, stage, "pending")

    async def _generate(self, request: GenerationRequest) -> Optional[GenerationResponse]:
        """Race the generator against the cancel token. ``None`` means cancelled."""
        token = request.cancel_token
        generation = asyncio.ensure_future(self._generator.generate(request))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({generation, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not generation.done():
                generation.cancel()
                generation.add_done_callback(_discard_late_result)

        if token.cancelled:
            if generation.done() and not generation.cancelled():
                _discard_late_result(generation)
            return None
        return generation.result()

    async def _commit(
        self, session: Session, result: StageResult, count_iteration: bool = False
    ) -> None:
        """Append ``result`` to the session; on a failed write the working copy is restored."""
        history = list(session.history)
        stage_results = dict(session.stage_results)
        iteration_count = session.iteration_count
        if count_iteration:
            session.iteration_count += 1
        committed = False
        try:
            await self._repository.append_result(session, result)
            committed = True
        finally:
            if not committed:
                session.history = history
                session.stage_results = stage_results
                session.iteration_count = iteration_count

    async def _record_error(
        self, session: Session, stage: StageName, user_prompt: str, message: str
    ) -> StageResult:
        result = StageResult(
            stage=stage,
            input=user_prompt,
            error=message,
            guidance=session.user_guidance or None,
        )
        await self._commit(session, result)
        self._transition(session, stage, "error")
        logger.warning(f"Stage {stage} failed for session {session.id}: {message}")
        self._notifier.error(f"{stage} failed: {message}")
        self.events.emit(
            "stage_completed", session_id=session.id, stage=stage, data={"ok": False}
        )
        return result

    def _check_structured(
        self, stage: StageName, text: str, schema: StructuredOutputSchema
    ) -> None:
        parsed = parse_structured_response(text, schema)
        if parsed is None:
            logger.warning(f"Stage {stage} returned no parseable JSON for schema {schema.name}")
            return
        _, mismatches = parsed
        for mismatch in mismatches:
            logger.warning(f"Stage {stage} response does not match {schema.name}: {mismatch}")

    def abort_generation(self, session_id: str) -> bool:
        """Cancel the active run of ``session_id``. Returns ``False`` if idle."""
        active = self._active.get(session_id)
        if active is None:
            return False
        stage, token = active
        logger.info(f"Aborting {stage} for session {session_id}")
        token.cancel()
        return True

    async def run_pipeline(
        self,
        session: Session,
        document: Optional[Mapping[str, Any]],
        stages: Optional[Sequence[StageName]] = None,
    ) -> List[StageResult]:
        """Run ``stages`` in order (all stages by default).

        A failed stage does not stop the batch; a cancelled one does.
        """
        results: List[StageResult] = []
        for stage in stages or STAGES:
            result = await self.run_stage(session, stage, document)
            if result is None:
                logger.info(f"Pipeline stopped at {stage} for session {session.id}")
                break
            results.append(result)
        return results

    async def quick_iterate(
        self, session: Session, document: Optional[Mapping[str, Any]]
    ) -> List[StageResult]:
        """Refine the rewrite with the last analysis, then analyze again."""
        analysis = session.stage_results.get("analyze")
        if analysis is None or not analysis.succeeded:
            logger.warning(f"Quick iterate needs an analyze result for session {session.id}")
            self._notifier.info("Run Analyze before iterating")
            return []

        results: List[StageResult] = []
        rewrite = await self.run_stage(session, "rewrite", document, is_refinement=True)
        if rewrite is None:
            return results
        results.append(rewrite)
        if rewrite.error:
            return results

        analyze = await self.run_stage(session, "analyze", document)
        if analyze is not None:
            results.append(analyze)
        return results

    async def reset(self, session: Session) -> Session:
        """Clear current results and the iteration count. History is kept."""
        self._ensure_idle(session)
        session.stage_results = empty_stage_results()
        session.iteration_count = 0
        self.forget(session.id)
        await self._repository.save(session)
        logger.info(f"Reset pipeline for session {session.id}")
        return session

    async def restore_history_item(self, session: Session, index: int) -> StageResult:
        """Make ``session.history[index]`` the current result for its stage."""
        self._ensure_idle(session)
        try:
            entry = session.history[index]
        except IndexError:
            raise NotFoundError(f"History entry {index} not found") from None
        session.stage_results[entry.stage] = entry
        self.forget(session.id)
        await self._repository.save(session)
        return entry

    def _ensure_idle(self, session: Session) -> None:
        if session.id in self._active:
            raise StageAlreadyRunningError(
                f"Session {session.id} has a stage running"
            )
