"""Builtin system prompts and presets shipped with the refinery."""

from __future__ import annotations

from ..constants import PRESET_VERSION
from ..models import StructuredOutputSchema
from .models import PromptPreset, SchemaPreset

BASE_SYSTEM_PROMPT = """You are a character card analyst and writer. You help improve roleplay character cards by providing specific, actionable feedback and high-quality rewrites.

Key principles:
- Preserve the character's core identity and unique traits
- Be specific - vague feedback is useless
- Quality over quantity - concise and impactful
- Maintain consistency across all fields"""

BASE_REFINEMENT_PROMPT = """You are refining a character card based on analysis feedback. Address identified issues while preserving what works.

Key principles:
- Fix specific problems from the analysis
- Keep improvements from previous iterations
- Maintain the character's essential identity
- Don't reintroduce previously fixed issues"""


def _prompt(id: str, name: str, stage: str, prompt: str) -> PromptPreset:
    return PromptPreset(
        id=id,
        name=name,
        stages=[stage],
        prompt=prompt,
        is_builtin=True,
        version=PRESET_VERSION,
        created_at=0,
        updated_at=0,
    )


def _schema(id: str, name: str, stage: str, schema: dict) -> SchemaPreset:
    return SchemaPreset(
        id=id,
        name=name,
        stages=[stage],
        schema=StructuredOutputSchema.model_validate(schema),
        is_builtin=True,
        version=PRESET_VERSION,
        created_at=0,
        updated_at=0,
    )


def _strict_object(properties: dict) -> dict:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
        "required": list(properties),
    }


_STRING_LIST = {"type": "array", "items": {"type": "string"}}

BUILTIN_PROMPT_PRESETS: tuple[PromptPreset, ...] = (
    _prompt(
        "builtin_score_default",
        "Default Score",
        "score",
        """Rate this character card on a scale of 1-10 for each field provided.

For each field:
1. **Score** (1-10)
2. **Strengths** - What works well
3. **Weaknesses** - What needs improvement
4. **Suggestions** - Concrete changes

Then provide:
- **Overall Score** (weighted average)
- **Top 3 Priority Improvements**
- **Summary**

Be critical but constructive. Specific, actionable feedback only.""",
    ),
    _prompt(
        "builtin_score_quick",
        "Quick Score",
        "score",
        """Give a quick assessment:

1. Overall score (1-10)
2. Three biggest strengths
3. Three areas needing work
4. One-sentence summary

Keep it concise but useful.""",
    ),
    _prompt(
        "builtin_rewrite_default",
        "Default Rewrite",
        "rewrite",
        """Rewrite this character card to address weaknesses while preserving strengths.

Guidelines:
- Maintain core personality and unique traits
- Improve weak areas from feedback
- Keep similar length unless noted
- Preserve distinctive voice/style
- Fix contradictions and fill gaps

Output the complete rewritten character with all fields.""",
    ),
    _prompt(
        "builtin_rewrite_conservative",
        "Conservative Rewrite",
        "rewrite",
        """Make minimal, surgical improvements. Only change what's clearly broken or weak.

Rules:
- Change as little as possible
- Preserve the author's voice completely
- Only fix obvious issues (contradictions, grammar, clarity)
- Do NOT add new content unless filling a critical gap
- Do NOT change style or tone

Output only the fields you changed, with [ORIGINAL] and [REVISED] versions for comparison.""",
    ),
    _prompt(
        "builtin_rewrite_expansive",
        "Expansive Rewrite",
        "rewrite",
        """Significantly expand and enhance this character card. Add depth, detail, and richness.

Goals:
- Flesh out underdeveloped areas
- Add sensory details and specific examples
- Deepen personality with quirks, contradictions, history
- Improve example messages with more variety
- Make the character feel more three-dimensional

Don't change the core concept, but make it shine. Output the complete expanded character card.""",
    ),
    _prompt(
        "builtin_analyze_default",
        "Default Analyze",
        "analyze",
        """Compare the original character card with the rewritten version.

## What Was Preserved
Core traits, distinctive elements, voice consistency

## What Was Lost
Diminished aspects, missing quirks, tone shifts

## What Was Gained
New depth, improvements, better clarity

## Soul Check
Does the rewrite still feel like the same character? Rate 1-10.

## Verdict
**ACCEPT** (ready), **NEEDS_REFINEMENT** (has issues), or **REGRESSION** (worse)

## Issues to Address
If NEEDS_REFINEMENT, list specific problems for next iteration.""",
    ),
    _prompt(
        "builtin_analyze_iteration",
        "Iteration Analyze",
        "analyze",
        """Compare the current rewrite against the original.

## Progress Check
- What issues from previous analysis were addressed?
- What new issues (if any) were introduced?
- Is this version better, worse, or lateral move?

## Soul Preservation Score (1-10)

## Verdict
**ACCEPT** - Ready, no more iterations needed
**NEEDS_REFINEMENT** - Progress, but issues remain
**REGRESSION** - Made things worse

## Next Steps
If NEEDS_REFINEMENT: What to fix next.
If REGRESSION: What went wrong.""",
    ),
    _prompt(
        "builtin_analyze_quick",
        "Quick Analyze",
        "analyze",
        """Quick comparison:

1. Soul preserved? (Yes/Partially/No)
2. Best improvement made
3. Biggest thing lost (if any)
4. Verdict: ACCEPT / NEEDS_REFINEMENT / REGRESSION""",
    ),
)

BUILTIN_SCHEMA_PRESETS: tuple[SchemaPreset, ...] = (
    _schema(
        "builtin_schema_score",
        "Score Schema",
        "score",
        {
            "name": "CharacterScore",
            "strict": True,
            "value": _strict_object(
                {
                    "fieldScores": {
                        "type": "array",
                        "items": _strict_object(
                            {
                                "field": {"type": "string"},
                                "score": {"type": "number"},
                                "strengths": {"type": "string"},
                                "weaknesses": {"type": "string"},
                                "suggestions": {"type": "string"},
                            }
                        ),
                    },
                    "overallScore": {"type": "number"},
                    "priorityImprovements": _STRING_LIST,
                    "summary": {"type": "string"},
                }
            ),
        },
    ),
    _schema(
        "builtin_schema_quick_score",
        "Quick Score Schema",
        "score",
        {
            "name": "QuickScore",
            "strict": True,
            "value": _strict_object(
                {
                    "overallScore": {"type": "number"},
                    "strengths": _STRING_LIST,
                    "weaknesses": _STRING_LIST,
                    "summary": {"type": "string"},
                }
            ),
        },
    ),
    _schema(
        "builtin_schema_analyze",
        "Analyze Schema",
        "analyze",
        {
            "name": "CharacterAnalysis",
            "strict": True,
            "value": _strict_object(
                {
                    "preserved": _STRING_LIST,
                    "lost": _STRING_LIST,
                    "gained": _STRING_LIST,
                    "soulScore": {"type": "number"},
                    "soulAssessment": {"type": "string"},
                    "verdict": {
                        "type": "string",
                        "enum": ["ACCEPT", "NEEDS_REFINEMENT", "REGRESSION"],
                    },
                    "issues": _STRING_LIST,
                    "recommendations": _STRING_LIST,
                }
            ),
        },
    ),
)

DEFAULT_STAGE_PROMPT_PRESETS = {
    "score": "builtin_score_default",
    "rewrite": "builtin_rewrite_default",
    "analyze": "builtin_analyze_default",
}
