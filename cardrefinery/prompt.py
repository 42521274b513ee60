"""Prompt assembly for pipeline stages."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence

from .config import PromptsConfig
from .constants import StageName
from .fields import CHARACTER_FIELDS, build_character_summary
from .models import FieldSchema, FieldSelection, StageResult

SECTION_BREAK = "\n\n---\n\n"


def _join(parts: Sequence[Optional[str]]) -> str:
    return "\n\n".join(p for p in parts if p and p.strip())


def system_prompt(
    prompts: PromptsConfig, stage: StageName, is_refinement: bool = False
) -> str:
    """Combined system prompt for ``stage``, or the refinement prompt."""
    if is_refinement:
        return _join([prompts.base_refinement_prompt, prompts.user_refinement_prompt])
    return _join(
        [
            prompts.base_system_prompt,
            prompts.user_system_prompt,
            prompts.stage_system_prompts.get(stage, ""),
        ]
    )


def _output(results: Mapping[str, Optional[StageResult]], stage: StageName) -> Optional[str]:
    result = results.get(stage)
    if result is None or not result.succeeded:
        return None
    return result.output


def build_user_prompt(
    document: Optional[Mapping[str, Any]],
    selection: FieldSelection,
    stage: StageName,
    instructions: str,
    previous_results: Mapping[str, Optional[StageResult]],
    iteration_count: int = 0,
    guidance: Optional[str] = None,
    is_refinement: bool = False,
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> str:
    """Build the user prompt for one stage run.

    The analyze stage sees the original character next to the score and
    rewrite outputs. The rewrite stage sees the score output and, when
    refining, the last analysis. Failed earlier results are left out.
    """
    parts: List[str] = []
    summary = build_character_summary(document, selection, schema)
    score = _output(previous_results, "score")

    if stage == "analyze":
        parts.append("## ORIGINAL CHARACTER\n\n")
        parts.append(summary)
        if score is not None:
            parts.append(f"{SECTION_BREAK}## SCORE RESULTS\n\n{score}")
        rewrite = _output(previous_results, "rewrite")
        if rewrite is not None:
            parts.append(f"{SECTION_BREAK}## REWRITTEN VERSION\n\n{rewrite}")
    else:
        parts.append(summary)
        if stage == "rewrite":
            if score is not None:
                parts.append(f"{SECTION_BREAK}## SCORE RESULTS\n\n{score}")
            analysis = _output(previous_results, "analyze")
            if is_refinement and analysis is not None:
                parts.append(f"{SECTION_BREAK}## ANALYSIS FEEDBACK\n\n{analysis}")

    if guidance and guidance.strip():
        parts.append(f"{SECTION_BREAK}## USER GUIDANCE\n\n{guidance.strip()}")

    if iteration_count > 0:
        parts.append(f"{SECTION_BREAK}*Refinement iteration {iteration_count + 1}*")

    if instructions and instructions.strip():
        parts.append(f"{SECTION_BREAK}## INSTRUCTIONS\n\n{instructions.strip()}")

    return "".join(parts)
