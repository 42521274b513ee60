"""Card Refinery: iterative multi-stage refinement of character cards."""

from .config import RefineryConfig, load_config
from .contracts import CancelToken, DictDocumentSource, GenerationRequest, GenerationResponse
from .engine import PipelineEngine
from .events import ChangeEvent, ChangeNotifier
from .generation import PydanticAIGenerator
from .models import Session, StageConfig, StageFieldSelection, StageResult
from .persistence import SessionRepository, VersionedStore, get_repository
from .registry import PresetRegistry
from .storage import get_store
from .workspace import Workspace

__version__ = "0.1.0"
__all__ = [
    "CancelToken",
    "ChangeEvent",
    "ChangeNotifier",
    "DictDocumentSource",
    "GenerationRequest",
    "GenerationResponse",
    "PipelineEngine",
    "PresetRegistry",
    "PydanticAIGenerator",
    "RefineryConfig",
    "Session",
    "SessionRepository",
    "StageConfig",
    "StageFieldSelection",
    "StageResult",
    "VersionedStore",
    "Workspace",
    "get_repository",
    "get_store",
    "load_config",
]
