"""Editing context: the current document, its active session and stage."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .constants import STAGES, SessionStatus, StageName, StageStatus
from .contracts import LoggingNotifier, NotificationSink
from .engine import PipelineEngine
from .errors import NotFoundError
from .events import ChangeNotifier
from .fields import build_original_data
from .models import FieldSelection, Session, StageConfig, StageFieldSelection, StageResult
from .persistence.repository import SessionRepository
from .registry import DEFAULT_STAGE_PROMPT_PRESETS
from . import selection as sel

logger = logging.getLogger(__name__)


def default_configs(
    stage_defaults: Optional[Mapping[StageName, StageConfig]] = None,
) -> Dict[StageName, StageConfig]:
    configs: Dict[StageName, StageConfig] = {}
    for stage in STAGES:
        configured = (stage_defaults or {}).get(stage)
        configs[stage] = (
            configured.model_copy(deep=True)
            if configured is not None
            else StageConfig(prompt_preset_id=DEFAULT_STAGE_PROMPT_PRESETS[stage])
        )
    return configs


class Workspace:
    """The document being refined and its active session.

    Until a session exists, field selection, stage configs and guidance are
    kept as a draft. The session is created lazily on the first action that
    needs persistence and from then on holds that state.
    """

    def __init__(
        self,
        repository: SessionRepository,
        engine: PipelineEngine,
        stage_defaults: Optional[Mapping[StageName, StageConfig]] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self._repository = repository
        self.engine = engine
        self.events: ChangeNotifier = engine.events
        self._notifier = notifier or LoggingNotifier()
        self._stage_defaults = dict(stage_defaults or {})

        self.character_id: Optional[str] = None
        self.document: Optional[Mapping[str, Any]] = None
        self.session: Optional[Session] = None
        self.sessions: List[Session] = []
        self.active_stage: StageName = "score"

        self._draft_fields = StageFieldSelection()
        self._draft_configs = default_configs(self._stage_defaults)
        self._draft_guidance: Optional[str] = None

    # ------------------------------------------------------------------
    # Views over the session or the draft
    @property
    def stage_fields(self) -> StageFieldSelection:
        return self.session.stage_fields if self.session else self._draft_fields

    @property
    def configs(self) -> Dict[StageName, StageConfig]:
        return self.session.configs if self.session else self._draft_configs

    @property
    def user_guidance(self) -> Optional[str]:
        return self.session.user_guidance if self.session else self._draft_guidance

    @property
    def character_name(self) -> str:
        return str((self.document or {}).get("name") or "Unknown")

    def selection_for(self, stage: Optional[StageName] = None) -> FieldSelection:
        return sel.effective_selection(self.stage_fields, stage or self.active_stage)

    def stage_status(self) -> Dict[StageName, StageStatus]:
        if self.session is None:
            return {stage: "pending" for stage in STAGES}
        return self.engine.stage_status(self.session)

    # ------------------------------------------------------------------
    # Document and session lifecycle
    async def set_document(
        self, character_id: Optional[str], document: Optional[Mapping[str, Any]]
    ) -> List[Session]:
        """Switch to ``document``, selecting all of its populated fields.

        Sessions for the character are listed but none is activated.
        """
        await self.save()
        if self.session is not None:
            self.engine.forget(self.session.id)
        self.character_id = character_id
        self.document = document
        self.session = None
        self._draft_fields = StageFieldSelection(base=sel.select_populated(document))
        self._draft_configs = default_configs(self._stage_defaults)
        self._draft_guidance = None
        self.sessions = []
        if character_id is not None and document is not None:
            self.sessions = await self._repository.list_for_character(character_id)
            logger.debug(
                f"Character {self.character_name}: {len(self.sessions)} sessions, "
                f"{len(self._draft_fields.base)} fields selected"
            )
        return self.sessions

    async def refresh_sessions(self) -> List[Session]:
        if self.character_id is None:
            self.sessions = []
        else:
            self.sessions = await self._repository.list_for_character(self.character_id)
        return self.sessions

    async def ensure_active_session(self) -> Optional[Session]:
        """Return the active session, creating one from the draft if needed."""
        if self.session is not None:
            return self.session
        if self.character_id is None or self.document is None:
            return None

        session = await self._repository.create(
            self.character_id,
            self.character_name,
            stage_fields=self._draft_fields,
            original_data=build_original_data(self.document, self._draft_fields.base),
            configs=self._draft_configs,
        )
        if self._draft_guidance:
            session.user_guidance = self._draft_guidance
            await self._repository.save(session)
        self.session = session
        await self.refresh_sessions()
        logger.debug(f"Lazy-created session {session.id}")
        self.events.emit("session_saved", session_id=session.id, data={"created": True})
        return session

    async def new_session(self) -> Optional[Session]:
        """Start a fresh session with the current selection and configs."""
        await self.save()
        self._detach()
        return await self.ensure_active_session()

    async def load_session(
        self, session_id: str, document: Optional[Mapping[str, Any]] = None
    ) -> Session:
        """Make a stored session active.

        ``document`` is required when the session belongs to a different
        character than the current one.
        """
        await self.save()
        session = await self._repository.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")

        if session.character_id != self.character_id:
            if document is None:
                raise NotFoundError(
                    f"Character {session.character_id} for session {session_id} is not loaded"
                )
            self.character_id = session.character_id
            self.document = document
        elif document is not None:
            self.document = document

        if self.session is not None:
            self.engine.forget(self.session.id)
        self.session = session
        self.engine.forget(session.id)
        await self.refresh_sessions()
        logger.info(f"Loaded session {session.id}")
        self.events.emit("session_loaded", session_id=session.id)
        return session

    async def save(self) -> Optional[Session]:
        if self.session is None:
            return None
        await self._repository.save(self.session)
        self.events.emit("session_saved", session_id=self.session.id)
        return self.session

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self._repository.delete(session_id)
        if self.session is not None and self.session.id == session_id:
            self._detach()
        else:
            self.engine.forget(session_id)
        await self.refresh_sessions()
        if deleted:
            self.events.emit("session_deleted", session_id=session_id)
        return deleted

    async def delete_all_sessions(self) -> int:
        if self.character_id is None:
            return 0
        count = await self._repository.delete_all_for_character(self.character_id)
        self._detach()
        for session in self.sessions:
            self.engine.forget(session.id)
        self.sessions = []
        self.events.emit("session_deleted", data={"character_id": self.character_id, "count": count})
        return count

    def _detach(self) -> None:
        """Drop the active session, keeping its selection as the draft."""
        if self.session is None:
            return
        self.engine.forget(self.session.id)
        self._draft_fields = self.session.stage_fields.model_copy(deep=True)
        self._draft_configs = copy.deepcopy(self.session.configs)
        self._draft_guidance = self.session.user_guidance
        self.session = None

    async def rename_session(self, session_id: str, name: Optional[str]) -> Session:
        renamed = await self._repository.rename(session_id, name)
        if self.session is not None and self.session.id == session_id:
            self.session.name = renamed.name
            self.session.updated_at = renamed.updated_at
        await self.refresh_sessions()
        self.events.emit("session_saved", session_id=session_id, data={"name": renamed.name})
        return renamed

    async def set_status(self, status: SessionStatus) -> Optional[Session]:
        if self.session is None:
            return None
        self.session.status = status
        return await self.save()

    # ------------------------------------------------------------------
    # Field selection, configs and guidance
    async def _update_fields(self, stage_fields: StageFieldSelection) -> None:
        if self.session is not None:
            self.session.stage_fields = stage_fields
            await self.save()
        else:
            self._draft_fields = stage_fields
            await self.ensure_active_session()
        self.events.emit(
            "selection_changed",
            session_id=self.session.id if self.session else None,
            stage=self.active_stage,
        )

    async def toggle_field(self, key: str, value: Union[bool, List[int]]) -> FieldSelection:
        """Select or deselect ``key`` for the active stage."""
        updated = sel.toggle_field(
            self.stage_fields, self.active_stage, key, value, document=self.document
        )
        await self._update_fields(updated)
        return self.selection_for()

    async def set_selection(self, selection: FieldSelection) -> None:
        await self._update_fields(
            sel.set_selection(self.stage_fields, self.active_stage, selection)
        )

    async def set_linked(self, linked: bool) -> None:
        await self._update_fields(sel.set_linked(self.stage_fields, linked, self.active_stage))

    def set_active_stage(self, stage: StageName) -> None:
        self.active_stage = stage

    async def update_stage_config(self, stage: StageName, **changes: Any) -> StageConfig:
        current = self.configs.get(stage) or StageConfig()
        updated = StageConfig.model_validate({**current.model_dump(), **changes})
        self.configs[stage] = updated
        if self.session is not None:
            await self.save()
        self.events.emit(
            "config_changed",
            session_id=self.session.id if self.session else None,
            stage=stage,
            data={"changed": sorted(changes)},
        )
        return updated

    async def set_user_guidance(self, guidance: Optional[str]) -> None:
        text = (guidance or "").strip() or None
        if self.session is not None:
            self.session.user_guidance = text
            await self.save()
        else:
            self._draft_guidance = text
        self.events.emit(
            "guidance_changed", session_id=self.session.id if self.session else None
        )

    # ------------------------------------------------------------------
    # Pipeline
    async def _session_for_run(self) -> Optional[Session]:
        session = await self.ensure_active_session()
        if session is None:
            logger.warning("Cannot run pipeline: no character selected")
            self._notifier.error("Select a character first")
        return session

    async def run_stage(self, stage: Optional[StageName] = None) -> Optional[StageResult]:
        session = await self._session_for_run()
        if session is None:
            return None
        return await self.engine.run_stage(session, stage or self.active_stage, self.document)

    async def run_pipeline(
        self, stages: Optional[Sequence[StageName]] = None
    ) -> List[StageResult]:
        session = await self._session_for_run()
        if session is None:
            return []
        return await self.engine.run_pipeline(session, self.document, stages)

    async def quick_iterate(self) -> List[StageResult]:
        session = await self._session_for_run()
        if session is None:
            return []
        return await self.engine.quick_iterate(session, self.document)

    def abort_generation(self) -> bool:
        if self.session is None:
            return False
        return self.engine.abort_generation(self.session.id)

    async def reset(self) -> None:
        if self.session is not None:
            await self.engine.reset(self.session)

    async def restore_history_item(self, index: int) -> StageResult:
        if self.session is None:
            raise NotFoundError("No active session")
        return await self.engine.restore_history_item(self.session, index)
