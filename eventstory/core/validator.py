"""
Response Validation for Story Extraction

This module turns the generic dictionary produced by the JSON repair pipeline
into checklist updates the interview can safely apply. The model's claims are
treated as proposals: each item is checked against the field schema and the
current checklist state, and anything that does not fit is dropped on its
own without failing the call.

Validation Modes:

Incremental (validate_incremental):
- Used after each interview answer
- Only fields that are empty or filled-but-unverified are eligible, so a
  value the user already confirmed is never silently replaced
- Returns the composed narrative as a plain string

Full text (validate_full_text):
- Used when the user edits the narrative by hand
- Every known field is eligible, since the edit may change confirmed facts
- Never returns a narrative; the narrative is the input

Failure Handling:
The repair pipeline is the only layer that raises. Both modes catch its
failure and return a structured result with `error` set and no items. The
incremental mode additionally tries to salvage a readable narrative straight
from the raw text, so the user still sees something useful.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .checklist import default_field_schema
from .json_repair import JsonRepairError, parse_with_fallback_flag
from .models import ChecklistItem, ExtractedItem, FieldSchema, StoryAnalysisResult

logger = logging.getLogger(__name__)

PARSE_ERROR = "Failed to parse response"
MIN_SALVAGE_LENGTH = 20
NARRATIVE_HEADING = "What:"

ChecklistState = Union[Iterable[ChecklistItem], Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_checklist_state(checklist_state: ChecklistState) -> Dict[str, Tuple[bool, bool]]:
    """
    Field id -> (filled, verified), from checklist items or a plain mapping.

    Mapping values may be ChecklistItem objects or dicts with `filled` and
    `verified` keys.
    """
    if isinstance(checklist_state, Mapping):
        entries = checklist_state.items()
    else:
        entries = ((item.id, item) for item in checklist_state)

    state = {}
    for field_id, entry in entries:
        if isinstance(entry, Mapping):
            state[field_id] = (bool(entry.get("filled")), bool(entry.get("verified")))
        else:
            state[field_id] = (bool(entry.filled), bool(entry.verified))
    return state


def normalize_story(story: Any) -> Optional[str]:
    """
    Reduce the `story` value to a plain string or None.

    Some models return `{"headline": ..., "content": ...}` instead of a
    string; content may be a string or a list of paragraphs. Parts are joined
    with blank lines.
    """
    if isinstance(story, str):
        return story.strip() or None
    if isinstance(story, Mapping):
        parts = []
        if story.get("headline"):
            parts.append(str(story["headline"]))
        content = story.get("content")
        if isinstance(content, list):
            parts.extend(str(part) for part in content)
        elif isinstance(content, str):
            parts.append(content)
        return "\n\n".join(parts) or None
    return None


_SCALAR_TYPES = (str, int, float, bool)


def _coerce_value(value: Any) -> Optional[Any]:
    """Strings and lists of scalars as strings; None for anything structured."""
    if isinstance(value, list):
        if not all(isinstance(v, _SCALAR_TYPES) for v in value):
            return None
        return [str(v) for v in value]
    if isinstance(value, _SCALAR_TYPES):
        return str(value)
    return None


def filter_items(raw_items: Any, eligible_ids: Set[str], schema: FieldSchema) -> List[ExtractedItem]:
    """
    Keep the raw items that pass field-level validation.

    An item is rejected when its id is not an eligible string, when its
    value or evidence is empty or missing, when its value is an object or a
    list holding objects, or when its value is outside the field's
    allowed values. A missing description becomes an empty string.
    """
    if not isinstance(raw_items, list):
        return []

    accepted = []
    for raw in raw_items:
        if not isinstance(raw, Mapping):
            continue
        field_id = raw.get("id")
        if not isinstance(field_id, str) or field_id not in eligible_ids:
            continue

        value = raw.get("value")
        evidence = raw.get("evidence")
        if value is None or value == "" or value == [] or not evidence or not isinstance(evidence, str):
            continue

        value = _coerce_value(value)
        if value is None or not schema.is_allowed(field_id, value):
            continue

        accepted.append(ExtractedItem(
            id=field_id,
            value=value,
            description=str(raw.get("description") or ""),
            evidence=str(evidence),
        ))
    return accepted


# ---------------------------------------------------------------------------
# Narrative salvage
# ---------------------------------------------------------------------------

_FENCE_OPEN_LINE_RE = re.compile(r"^```(?:json)?\s*\n?", re.MULTILINE)
_FENCE_CLOSE_LINE_RE = re.compile(r"\n?```\s*$", re.MULTILINE)
_EMBEDDED_STORY_RE = re.compile(r'"story"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_TRAILING_JSON_ARTIFACTS_RE = re.compile(r'["\s,}]+$')


def salvage_narrative(raw: str) -> Optional[str]:
    """
    Recover a readable narrative from a response that failed to parse.

    Tries, in order:
    1. an embedded `"story": "..."` string, JSON-decoded
    2. text starting at the "What:" heading, with any JSON prefix and
       trailing JSON punctuation removed

    Input shorter than 20 characters is treated as noise.
    """
    if not raw or len(raw) < MIN_SALVAGE_LENGTH:
        return None

    text = _FENCE_OPEN_LINE_RE.sub("", raw)
    text = _FENCE_CLOSE_LINE_RE.sub("", text).strip()

    story_match = _EMBEDDED_STORY_RE.search(text)
    if story_match:
        try:
            decoded = json.loads(f'"{story_match.group(1)}"')
        except ValueError:
            decoded = ""
        if len(decoded) > MIN_SALVAGE_LENGTH:
            return decoded

    heading_at = text.find(NARRATIVE_HEADING)
    if heading_at >= 0:
        narrative = _TRAILING_JSON_ARTIFACTS_RE.sub("", text[heading_at:]).strip()
        if narrative:
            return narrative

    return None


# ---------------------------------------------------------------------------
# Validation modes
# ---------------------------------------------------------------------------

def validate_incremental(raw: str, schema: FieldSchema, checklist_state: ChecklistState) -> StoryAnalysisResult:
    """
    Validate an interview-turn response: items for unconfirmed fields plus the story.

    Args:
        raw: Raw model response
        schema: Field id -> allowed values for every known field
        checklist_state: Current filled/verified state per field

    Returns:
        StoryAnalysisResult; on total parse failure, no items, the error
        "Failed to parse response" and a salvaged story if one was found
    """
    try:
        payload, used_fallback = parse_with_fallback_flag(raw)
    except JsonRepairError as exc:
        logger.warning("All parse strategies failed: %s", exc)
        logger.warning("Raw response (first 300): %s", raw[:300])
        return StoryAnalysisResult(items=[], story=salvage_narrative(raw), error=PARSE_ERROR)

    story = normalize_story(payload.get("story"))
    if story is None and used_fallback:
        story = salvage_narrative(raw)

    state = normalize_checklist_state(checklist_state)
    eligible = {
        field_id for field_id in schema.known_ids()
        if state.get(field_id, (False, False)) != (True, True)
    }

    items = filter_items(payload.get("items"), eligible, schema)
    return StoryAnalysisResult(items=items, story=story, error=None)


def validate_full_text(raw: str, schema: FieldSchema, checklist_state: ChecklistState) -> StoryAnalysisResult:
    """
    Validate a response to a hand-edited narrative: items for every known field.

    The checklist state is accepted for interface symmetry but does not
    restrict eligibility. The story is always None.
    """
    try:
        payload = parse_with_fallback_flag(raw)[0]
    except JsonRepairError:
        logger.warning("Failed to parse text analysis response: %s", raw[:200])
        return StoryAnalysisResult(items=[], story=None, error=PARSE_ERROR)

    items = filter_items(payload.get("items"), schema.known_ids(), schema)
    return StoryAnalysisResult(items=items, story=None, error=None)


# ---------------------------------------------------------------------------
# Checklist-based wrappers
# ---------------------------------------------------------------------------

def _schema_for(checklist: List[ChecklistItem], schema: Optional[FieldSchema]) -> FieldSchema:
    schema = schema or default_field_schema()
    return schema.restricted_to(item.id for item in checklist)


def parse_analysis_response(
    raw: str, checklist: List[ChecklistItem], schema: Optional[FieldSchema] = None
) -> StoryAnalysisResult:
    """Incremental validation where the known fields are the checklist's fields."""
    return validate_incremental(raw, _schema_for(checklist, schema), checklist)


def parse_text_analysis_response(
    raw: str, checklist: List[ChecklistItem], schema: Optional[FieldSchema] = None
) -> StoryAnalysisResult:
    """Full-text validation where the known fields are the checklist's fields."""
    return validate_full_text(raw, _schema_for(checklist, schema), checklist)
