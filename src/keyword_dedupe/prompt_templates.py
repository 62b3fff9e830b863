"""Prompt builder for keyword merge decisions.

Gemini receives the primary (surviving) keyword and one secondary and must
answer with a JSON object ``{"action", "keyword", "description"}``. The
schema below is passed as ``response_schema`` so the model output is
structured JSON; parsing still validates it.
"""

from typing import Any, Dict

from src.keyword_dedupe.models import Keyword, MergeAction


# ============================================================================
# System Prompt
# ============================================================================

SYSTEM_PROMPT = """You are merging duplicate keywords in a news/knowledge graph.

Compare the two keywords and decide exactly one action:

- **merge**: PREFERRED when they are close variants or overlap. Choose a single, clear keyword (it can be new) and optionally a concise merged description.
- **rename**: use ONLY if they must stay separate. Give the SECONDARY a NEW, more specific name that differs from both original names (e.g. "Trump" -> "Trump impeachment crisis"). Provide the new name and an optional description for the secondary.
- **skip**: only if they are clearly unrelated.

Always return strict JSON with keys: action, keyword (optional for merge, required for rename), description (optional)."""

EMPTY_FIELD = "(none)"


def _format_keyword(keyword: Keyword) -> str:
    name = (keyword.name or "").strip() or EMPTY_FIELD
    description = (keyword.description or "").strip() or EMPTY_FIELD
    return f"keyword: {name}\ndescription: {description}"


def build_merge_prompt(primary: Keyword, secondary: Keyword) -> str:
    """Build the user prompt for one (primary, secondary) decision.

    Args:
        primary: Current merged identity of the surviving keyword.
        secondary: Keyword that may be merged into the primary or renamed.

    Returns:
        Prompt text.
    """
    return "\n".join(
        [
            "Primary (keep):",
            _format_keyword(primary),
            "",
            "Secondary (candidate to merge/rename):",
            _format_keyword(secondary),
        ]
    )


def get_merge_decision_response_schema() -> Dict[str, Any]:
    """JSON schema for Gemini structured output."""
    return {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": [action.value for action in MergeAction],
            },
            "keyword": {"type": "string"},
            "description": {"type": "string"},
        },
        "required": ["action"],
    }

