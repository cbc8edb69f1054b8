"""
Prompt Construction for Story Extraction

Builds the instructions sent to the language model from the checklist
definition and the interview state. Field identifiers, allow-lists and the
filled/verified status of each field are rendered from the same FieldSchema
the validator enforces, so the model is told exactly what will be accepted.

Two prompt families mirror the two validation modes:
- build_system_prompt: interview turn, extract unconfirmed fields and
  compose the narrative
- build_text_analysis_prompt: hand-edited narrative, re-extract all fields
"""

from typing import List, Optional

from .models import ChecklistItem, ConversationEntry, FieldSchema

NARRATIVE_SECTIONS = ["What:", "Who:", "When:", "What to do:"]
NARRATIVE_HEADINGS = "\n".join(NARRATIVE_SECTIONS)

RESPONSE_FORMAT = (
    '{"items":[{"id":"field_id","value":"extracted_value",'
    '"description":"clear verification summary","evidence":"exact quote from user"}],'
    '"story":"What:\\n<text>\\n\\nWho:\\n<text>\\n\\nWhen:\\n<text>\\n\\nWhat to do:\\n<text>"}'
)
TEXT_RESPONSE_FORMAT = (
    '{"items":[{"id":"field_id","value":"extracted_value",'
    '"description":"clear verification summary","evidence":"exact quote from text"}]}'
)


def generate_checklist_schema(checklist: List[ChecklistItem], schema: FieldSchema, mode: str = "incremental") -> str:
    """
    Render one line per checklist field with its constraint and status.

    Args:
        checklist: Current interview state
        schema: Allowed values per field
        mode: "incremental" reports VERIFIED/UNVERIFIED/EMPTY; "full" reports
              CURRENT/EMPTY because every field may be re-extracted

    Returns:
        Newline-joined field descriptions, e.g.
        `  - "timing" (Timing) (MUST be one of: now, scheduled, resolved) -> EMPTY`
    """
    lines = []
    for item in checklist:
        allowed = schema.allowed_values(item.id)
        constraint = f" (MUST be one of: {', '.join(allowed)})" if allowed else " (free text)"

        if mode == "full":
            status = f"CURRENT: {_format_value(item.value)}" if item.filled else "EMPTY"
        elif item.filled and item.verified:
            status = f"VERIFIED: {_format_value(item.value)}"
        elif item.filled:
            status = f"UNVERIFIED: {_format_value(item.value)}"
        else:
            status = "EMPTY"

        lines.append(f'  - "{item.id}" ({item.label or item.id}){constraint} -> {status}')
    return "\n".join(lines)


def _format_value(value) -> str:
    if isinstance(value, list):
        return ", ".join(value)
    return "" if value is None else str(value)


def _with_product_context(prompt: str, product_context: Optional[str]) -> str:
    if not product_context:
        return prompt
    return (
        f"{prompt}\n\n## Product Context\n"
        "Use the following product-specific context to understand terminology and rules.\n\n"
        f"{product_context}"
    )


def build_system_prompt(
    checklist: List[ChecklistItem], schema: FieldSchema, product_context: Optional[str] = None
) -> str:
    """Instructions for an interview turn: extract fields and compose the narrative."""
    prompt = f"""You help teams write clear, actionable event notifications for end users.

You have two jobs.

## Job 1: Extract checklist information
Scan the conversation for information matching the checklist items below.

Checklist items:
{generate_checklist_schema(checklist, schema, mode="incremental")}

Rules:
- ONLY extract items that are EMPTY or UNVERIFIED. Never extract VERIFIED items.
- For fields with allowed values, use EXACTLY one of the listed values.
- The "evidence" MUST be the exact phrase from the user's input that supports the value.
- The "description" must let a human check the extraction at a glance.
- For free text fields, keep the user's concrete details (names, dates, steps).

## Job 2: Compose the event narrative
Write the narrative with these headings, each on its own line followed by its paragraph:
{NARRATIVE_HEADINGS}

- Separate sections with a blank line. Omit sections without information.
- Only include facts from the conversation. Do NOT invent details.

## Response format
Return ONLY valid JSON, no markdown fences, no explanation:
{RESPONSE_FORMAT}

"story" MUST be a plain string. If no new items are found, return an empty items array but still return a story."""
    return _with_product_context(prompt, product_context)


def build_text_analysis_prompt(
    checklist: List[ChecklistItem], schema: FieldSchema, product_context: Optional[str] = None
) -> str:
    """Instructions for re-extracting every field from a hand-edited narrative."""
    prompt = f"""You help teams write clear, actionable event notifications for end users.

The user has edited their event narrative by hand. Extract checklist information from it.

Checklist items:
{generate_checklist_schema(checklist, schema, mode="full")}

Rules:
- Extract ALL items you can identify, including ones that already have a value.
- For fields with allowed values, use EXACTLY one of the listed values.
- The "evidence" MUST be the exact phrase from the text that supports the value.
- The "description" must let a human check the extraction at a glance.

## Response format
Return ONLY valid JSON, no markdown fences, no explanation:
{TEXT_RESPONSE_FORMAT}

If no items are found, return {{"items":[]}}"""
    return _with_product_context(prompt, product_context)


def build_user_message(conversation: List[ConversationEntry]) -> str:
    """Number the answered questions as Q1, Q2, ... with selections and free text."""
    if not conversation:
        return "(no answers yet)"

    blocks = []
    for i, entry in enumerate(conversation, start=1):
        parts = [f"Q{i}: {entry.question}"]
        if entry.selected_options:
            parts.append(f"Selected: {', '.join(entry.selected_options)}")
        if entry.freeform_text:
            parts.append(f"Answer: {entry.freeform_text}")
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks)
