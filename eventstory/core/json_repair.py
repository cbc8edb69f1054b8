"""
JSON Repair Pipeline for Language Model Output

Language models asked for JSON routinely return something that is almost, but
not quite, JSON: fenced in markdown, commented, single-quoted, with raw
newlines inside strings, trailing commas, missing values, or simply cut off at
the token limit. This module turns such text into a parsed dictionary through
a fixed sequence of small, independent repairs, escalating to pattern-based
salvage only when every JSON-based strategy has failed.

Pipeline Order (robust_json_parse):
1. strip_markdown_fences   - code fences and trailing conversational prose
2. strip_json_comments     - // and /* */ comments outside strings
3. fix_single_quotes       - single-quoted structure to double quotes
4. sanitize_json_control_chars - literal newlines/tabs inside strings
5. fix_json_quirks         - missing values, trailing commas, **bold** markers
6. try_repair_json         - close unterminated structures, truncate at the
                             last complete object
7. regex_fallback_extraction - literal item/story patterns from the raw text

Every stage is a pure str -> str function and a no-op on valid input wherever
possible, so each can be tested on its own. The stage order is part of the
contract.

String Awareness:
Stages that must not touch string contents walk the text with _StringState,
which tracks whether the current character sits inside a double-quoted
literal and whether it is escaped.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import ExtractedItem, RegexFallbackResult

logger = logging.getLogger(__name__)

PARSE_FAILURE_MESSAGE = "Failed to parse response after all repair strategies"


class JsonRepairError(ValueError):
    """Raised when no repair strategy or fallback recovers anything."""

    def __init__(self, message: str = PARSE_FAILURE_MESSAGE):
        super().__init__(message)


# ---------------------------------------------------------------------------
# String state scanner
# ---------------------------------------------------------------------------

# Character classes reported by _StringState.step
ESCAPED = "escaped"
QUOTE = "quote"
IN_STRING = "in_string"
STRUCTURAL = "structural"


class _StringState:
    """
    Tracks in-string / escape state while walking JSON-ish text.

    Rules per character, in order:
    1. A character following a backslash inside a string is consumed literally.
    2. A backslash inside a string marks the next character as escaped.
    3. A double quote toggles the in-string state.
    4. Anything else is string content or structure, depending on the state.
    """

    __slots__ = ("in_string", "escape_next")

    def __init__(self):
        self.in_string = False
        self.escape_next = False

    def step(self, ch: str) -> str:
        if self.escape_next:
            self.escape_next = False
            return ESCAPED
        if ch == "\\" and self.in_string:
            self.escape_next = True
            return ESCAPED
        if ch == '"':
            self.in_string = not self.in_string
            return QUOTE
        return IN_STRING if self.in_string else STRUCTURAL


def _parses(text: str) -> bool:
    try:
        json.loads(text)
        return True
    except (ValueError, RecursionError):
        return False


# ---------------------------------------------------------------------------
# Stage 1: Markdown fences and trailing prose
# ---------------------------------------------------------------------------

_COMPLETE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*)\s*```\s*$")
_OPENING_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?")
_TRAILING_FENCE_RE = re.compile(r"`{1,3}\s*$")
_JSON_CONTINUATION_RE = re.compile(r"^[,\]}\[]")


def strip_markdown_fences(raw: str) -> str:
    """
    Strip markdown code fences and trailing conversational text.

    Handles complete fences (```json ... ```) as well as truncated responses
    where the closing fence never arrived. Text after the last closing brace
    is dropped unless it looks like more JSON, so "I hope this helps!" goes
    but `{"a":1},{"b":2}` survives.

    Args:
        raw: Raw model response

    Returns:
        The response with fences and trailing prose removed, trimmed
    """
    text = raw.strip()

    fence_match = _COMPLETE_FENCE_RE.search(text)
    if fence_match:
        return fence_match.group(1).strip()

    if text.startswith("```"):
        text = _OPENING_FENCE_RE.sub("", text, count=1)

    # Partial closing fence left by a token cutoff ("``" or "`")
    text = _TRAILING_FENCE_RE.sub("", text)

    last_brace = text.rfind("}")
    if 0 <= last_brace < len(text) - 1:
        trailing = text[last_brace + 1:].strip()
        if trailing and not _JSON_CONTINUATION_RE.match(trailing):
            text = text[:last_brace + 1]

    return text.strip()


# ---------------------------------------------------------------------------
# Stage 2: Comments
# ---------------------------------------------------------------------------

def strip_json_comments(text: str) -> str:
    """
    Remove // line comments and /* */ block comments outside string values.

    A // inside a string (e.g. in a URL) is left alone. An unterminated block
    comment swallows the rest of the input.
    """
    result = []
    state = _StringState()
    i = 0
    length = len(text)

    while i < length:
        ch = text[i]
        kind = state.step(ch)

        if kind == STRUCTURAL and ch == "/":
            following = text[i + 1:i + 2]
            if following == "/":
                end_of_line = text.find("\n", i)
                # The newline itself is kept
                i = end_of_line if end_of_line >= 0 else length
                continue
            if following == "*":
                end = text.find("*/", i + 2)
                i = end + 2 if end >= 0 else length
                continue

        result.append(ch)
        i += 1

    return "".join(result)


# ---------------------------------------------------------------------------
# Stage 3: Single quotes
# ---------------------------------------------------------------------------

_SINGLE_QUOTED_JSON_RE = re.compile(r"^[{\[]\s*'")


def fix_single_quotes(text: str) -> str:
    """
    Convert single-quoted JSON structure to double quotes.

    Only applies when the text starts like `{'` or `['`; anything else is
    returned unchanged. Double quotes occurring inside an originally
    single-quoted string are escaped so they do not end the string early.
    """
    if not _SINGLE_QUOTED_JSON_RE.match(text.strip()):
        return text

    result = []
    in_string = False
    quote = ""
    escape_next = False

    for ch in text:
        if escape_next:
            result.append(ch)
            escape_next = False
            continue
        if ch == "\\":
            result.append(ch)
            escape_next = True
            continue

        if not in_string:
            if ch in ("'", '"'):
                result.append('"')
                in_string = True
                quote = ch
                continue
        else:
            if ch == quote:
                result.append('"')
                in_string = False
                continue
            if quote == "'" and ch == '"':
                result.append('\\"')
                continue

        result.append(ch)

    return "".join(result)


# ---------------------------------------------------------------------------
# Stage 4: Control characters
# ---------------------------------------------------------------------------

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def sanitize_json_control_chars(text: str) -> str:
    """
    Escape literal newlines, carriage returns and tabs inside string values.

    Existing escape sequences are never touched: an escaped `\\n` is two
    characters, not a newline, so it passes through as is.
    """
    result = []
    state = _StringState()

    for ch in text:
        if state.step(ch) == IN_STRING and ch in _CONTROL_ESCAPES:
            result.append(_CONTROL_ESCAPES[ch])
        else:
            result.append(ch)

    return "".join(result)


# ---------------------------------------------------------------------------
# Stage 5: Common quirks
# ---------------------------------------------------------------------------

_MISSING_VALUE_RE = re.compile(r":\s*([,}\]])")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BOLD_IN_STRING_RE = re.compile(r'"([^"]*?\*\*[^"]*?)"')


def fix_json_quirks(text: str) -> str:
    """
    Fix common model JSON quirks:
    - missing values: `"key":}` / `"key":,` become `"key":null}` / `"key":null,`
    - trailing commas: `[...,]` / `{...,}` become `[...]` / `{...}`
    - markdown bold markers inside values: `**text**` becomes `text`
    """
    fixed = _MISSING_VALUE_RE.sub(r":null\1", text)
    fixed = _TRAILING_COMMA_RE.sub(r"\1", fixed)
    fixed = _BOLD_IN_STRING_RE.sub(lambda match: match.group(0).replace("**", ""), fixed)
    return fixed


# ---------------------------------------------------------------------------
# Structure repair (truncated responses)
# ---------------------------------------------------------------------------

_CLOSER_FOR = {"{": "}", "[": "]"}
_TRAILING_COMMA_AT_END_RE = re.compile(r",\s*$")


def close_json_structure(text: str) -> str:
    """
    Close an unterminated string and any unclosed arrays/objects.

    Openers are tracked on an explicit stack (no recursion, so arbitrarily
    deep input is safe) and closed last-opened-first. A trailing comma is
    removed before the closers are appended, so `{"items":[{"id":"foo"`
    becomes `{"items":[{"id":"foo"}]}`.
    """
    state = _StringState()
    stack: List[str] = []

    for ch in text:
        if state.step(ch) != STRUCTURAL:
            continue
        if ch in _CLOSER_FOR:
            stack.append(ch)
        elif ch == "}":
            if stack and stack[-1] == "{":
                stack.pop()
        elif ch == "]":
            if stack and stack[-1] == "[":
                stack.pop()

    result = text
    if state.in_string:
        result += '"'
    result = _TRAILING_COMMA_AT_END_RE.sub("", result)
    while stack:
        result += _CLOSER_FOR[stack.pop()]
    return result


def _truncate_and_close(text: str) -> Optional[str]:
    """Cut at the last (then second-to-last) `}` and close what remains."""
    last_brace = text.rfind("}")
    if last_brace <= 0:
        return None

    closed = close_json_structure(text[:last_brace + 1])
    if _parses(closed):
        return closed

    # Only one more step back; deeper truncation damage is not recovered
    second_last = text.rfind("}", 0, last_brace)
    if second_last > 0:
        closed = close_json_structure(text[:second_last + 1])
        if _parses(closed):
            return closed

    return None


def try_repair_json(text: str) -> Optional[str]:
    """
    Return parseable JSON text derived from `text`, or None.

    Strategies, in order:
    1. the text as is
    2. close unterminated strings and structures
    3. truncate at the last complete object and close
    4. truncate at the second-to-last complete object and close
    """
    if _parses(text):
        return text

    repaired = close_json_structure(text)
    if repaired and _parses(repaired):
        logger.debug("Repaired JSON by closing open structures")
        return repaired

    truncated = _truncate_and_close(text)
    if truncated is not None:
        logger.debug("Repaired JSON by truncating at a complete object")
    return truncated


# ---------------------------------------------------------------------------
# Regex fallback extraction
# ---------------------------------------------------------------------------

# Strict key order: id, value, description, evidence
_ITEM_RE = re.compile(
    r'"id"\s*:\s*"([^"]*?)"\s*,\s*'
    r'"value"\s*:\s*"([^"]*?)"\s*,\s*'
    r'"description"\s*:\s*"([^"]*?)"\s*,\s*'
    r'"evidence"\s*:\s*"([^"]*?)"'
)
_STORY_RE = re.compile(r'"story"\s*:\s*"([\s\S]*?)"\s*\}?\s*(?:```)?$')


def regex_fallback_extraction(raw: str) -> RegexFallbackResult:
    """
    Last-resort extraction of items and story from malformed JSON.

    Used when the text cannot be made into JSON at all, typically because a
    value contains unescaped double quotes. Items are only recognized when
    their keys appear in the order id, value, description, evidence; an item
    whose fields contain stray quotes is simply not matched. The story is
    taken up to the last quote before the object (or a closing fence) ends.

    Never raises: with nothing recognizable the result is empty.
    """
    items = [
        ExtractedItem(id=m.group(1), value=m.group(2), description=m.group(3), evidence=m.group(4))
        for m in _ITEM_RE.finditer(raw)
    ]

    story = None
    story_match = _STORY_RE.search(raw)
    if story_match:
        story = (
            story_match.group(1)
            .replace("\\n", "\n")
            .replace('\\"', '"')
            .replace("\\t", "\t")
            .strip()
        ) or None

    return RegexFallbackResult(items=items, story=story)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

REPAIR_STAGES: Tuple[Callable[[str], str], ...] = (
    strip_markdown_fences,
    strip_json_comments,
    fix_single_quotes,
    sanitize_json_control_chars,
    fix_json_quirks,
)


def parse_with_fallback_flag(raw: str) -> Tuple[Dict[str, Any], bool]:
    """
    Run the full pipeline and report whether the regex fallback was needed.

    Returns:
        Tuple of (payload, used_regex_fallback)

    Raises:
        JsonRepairError: if nothing at all could be recovered
    """
    text = raw
    for stage in REPAIR_STAGES:
        text = stage(text)

    repaired = try_repair_json(text)
    if repaired is not None:
        text = repaired

    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        payload = None

    if isinstance(payload, dict):
        return payload, False
    if payload is not None:
        logger.debug("Parsed JSON is a %s, not an object", type(payload).__name__)

    fallback = regex_fallback_extraction(raw)
    if fallback.items or fallback.story:
        logger.warning("Used regex fallback for malformed JSON")
        return {
            "items": [item.model_dump() for item in fallback.items],
            "story": fallback.story,
        }, True

    raise JsonRepairError()


def robust_json_parse(raw: str) -> Dict[str, Any]:
    """
    Turn a raw model response into a dictionary, repairing it as needed.

    Args:
        raw: Unprocessed model output

    Returns:
        The parsed JSON object, or `{"items": [...], "story": ...}` recovered
        by the regex fallback

    Raises:
        JsonRepairError: "Failed to parse response after all repair strategies"
    """
    payload, _ = parse_with_fallback_flag(raw)
    return payload


parse_model_output = robust_json_parse
