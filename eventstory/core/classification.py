"""
Classification and Story Composition

Works from a partially filled checklist. `derive_classification` decides
which kind of message the event calls for (inline validation, error warning,
feedback toast or notification) and how confident that call is.
`compose_story` turns the filled fields into a narrative in the same
What/Who/When/What to do layout the models are asked to produce, so there is
always a story even when no model output could be salvaged.

Severity scoring for notifications is not done here. Callers that have a
severity table pass it in as `severity_rule`.
"""

import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .models import ChannelQuality, ChecklistItem, FieldValue, ImpactFactors, StoryClassification
from .prompter import NARRATIVE_SECTIONS

logger = logging.getLogger(__name__)

SeverityRule = Callable[[ImpactFactors], Tuple[Optional[str], List[str]]]

KNOWN_EVENT_KINDS = ["system_change", "error_issue", "user_action", "process_update"]

CONFIDENCE_FIELDS = ["what_happened", "event_kind", "who_affected", "user_impact", "timing", "action_required"]

# Message types
VALIDATION_MESSAGE = "Validation message"
ERROR_WARNING = "Error warning"
FEEDBACK = "Feedback"
NOTIFICATION = "Notification"

# Delivery channels
INLINE_FIELD_VALIDATION = "Inline field validation"
INLINE_MESSAGE = "Inline message"
TOAST_NOTIFICATION = "Toast notification"

EVENT_KIND_LABELS = {
    "system_change": "A system change.",
    "error_issue": "An error or issue.",
    "user_action": "Feedback on a user action.",
    "process_update": "A process update.",
}
IMPACT_LABELS = {
    "blocked": "Users cannot complete their primary workflow.",
    "degraded": "Users can continue, with reduced functionality.",
    "no_impact": "Users can keep working as usual.",
}
TIMING_LABELS = {
    "now": "This is happening now.",
    "scheduled": "This is scheduled.",
    "resolved": "This has been resolved.",
}
SECURITY_IMPLICATION = "This has security or compliance implications."


def no_severity(factors: ImpactFactors) -> Tuple[Optional[str], List[str]]:
    """Default severity rule: no severity and no channel recommendation."""
    return None, []


def _filled_value(checklist: Iterable[ChecklistItem], field_id: str) -> Optional[FieldValue]:
    """Value of a filled field; None when the field is empty or absent from the checklist."""
    for item in checklist:
        if item.id == field_id:
            return item.value if item.filled else None
    return None


def _is_filled(checklist: Iterable[ChecklistItem], field_id: str) -> bool:
    return any(item.id == field_id and item.filled for item in checklist)


def _as_text(value: FieldValue) -> str:
    return ", ".join(value) if isinstance(value, list) else value


def calculate_confidence(checklist: Sequence[ChecklistItem]) -> float:
    """Share of the core notification fields that are filled, rounded to two decimals."""
    filled = sum(1 for field_id in CONFIDENCE_FIELDS if _is_filled(checklist, field_id))
    return round(filled / len(CONFIDENCE_FIELDS), 2)


def build_impact_factors(checklist: Sequence[ChecklistItem]) -> ImpactFactors:
    def text(field_id: str) -> str:
        value = _filled_value(checklist, field_id)
        return value if isinstance(value, str) else ""

    timing = text("timing")
    security = _filled_value(checklist, "security")
    return ImpactFactors(
        user_impact=text("user_impact"),
        user_scope=text("impact_scope"),
        timing=timing,
        lead_time="1_to_7_days" if timing == "scheduled" else "",
        security_compliance=None if security is None else security == "yes",
        action_required=text("action_required"),
    )


def derive_classification(
    checklist: Sequence[ChecklistItem],
    severity_rule: Optional[SeverityRule] = None,
) -> Optional[StoryClassification]:
    """
    Classify the event described by a partially filled checklist.

    Errors and user actions map to fixed message types; their confidence is
    a constant for the branch taken. Everything else, including event kinds
    outside the known list, becomes a notification whose confidence reflects
    how much of the checklist is filled.

    Args:
        checklist: Current interview state
        severity_rule: Maps impact factors to (severity, channels) for notifications

    Returns:
        The classification, or None while the event kind is unknown
    """
    kind = _filled_value(checklist, "event_kind")
    if kind is None:
        return None

    if kind == "error_issue":
        if _filled_value(checklist, "error_location") == "specific_field":
            return StoryClassification(
                type=VALIDATION_MESSAGE, channels=[INLINE_FIELD_VALIDATION], confidence=0.85
            )
        return StoryClassification(type=ERROR_WARNING, channels=[INLINE_MESSAGE], confidence=0.75)

    if kind == "user_action":
        if _filled_value(checklist, "field_context") == "form":
            return StoryClassification(
                type=VALIDATION_MESSAGE, channels=[INLINE_FIELD_VALIDATION], confidence=0.8
            )
        return StoryClassification(type=FEEDBACK, channels=[TOAST_NOTIFICATION], confidence=0.7)

    if kind not in KNOWN_EVENT_KINDS:
        logger.debug("Unrecognized event kind %r classified as a notification", kind)

    severity, channels = (severity_rule or no_severity)(build_impact_factors(checklist))
    return StoryClassification(
        type=NOTIFICATION,
        severity=severity,
        channels=list(channels),
        confidence=calculate_confidence(checklist),
    )


def compose_story(checklist: Sequence[ChecklistItem]) -> str:
    """
    Build a narrative from the filled checklist fields.

    Sections without content are left out entirely; an empty checklist
    yields an empty string. The "What to do" section needs both an action
    other than "no" and concrete steps.
    """
    what_heading, who_heading, when_heading, todo_heading = NARRATIVE_SECTIONS
    sections = []

    what_parts = []
    kind = _filled_value(checklist, "event_kind")
    if kind:
        kind_text = _as_text(kind)
        what_parts.append(EVENT_KIND_LABELS.get(kind_text, kind_text))
    what = _filled_value(checklist, "what_happened")
    if what:
        what_parts.append(_as_text(what))
    location = _filled_value(checklist, "error_location")
    if location:
        what_parts.append(f"Occurs at {_as_text(location)}.")
    if _filled_value(checklist, "security") == "yes":
        what_parts.append(SECURITY_IMPLICATION)
    if what_parts:
        sections.append(f"{what_heading}\n{' '.join(what_parts)}")

    who_parts = []
    who = _filled_value(checklist, "who_affected")
    if who:
        who_parts.append(f"Affects {_as_text(who)}.")
    impact = _filled_value(checklist, "user_impact")
    if isinstance(impact, str) and impact in IMPACT_LABELS:
        who_parts.append(IMPACT_LABELS[impact])
    if who_parts:
        sections.append(f"{who_heading}\n{' '.join(who_parts)}")

    timing = _filled_value(checklist, "timing")
    if isinstance(timing, str) and timing in TIMING_LABELS:
        sections.append(f"{when_heading}\n{TIMING_LABELS[timing]}")

    action = _filled_value(checklist, "action_required")
    what_to_do = _filled_value(checklist, "what_to_do")
    if action is not None and action != "no" and what_to_do:
        sections.append(f"{todo_heading}\nUsers need to {_as_text(what_to_do)}")

    return "\n\n".join(sections)


def assess_channel_quality(checklist: Sequence[ChecklistItem], channels: Iterable[str]) -> List[ChannelQuality]:
    """Check, per delivery channel, whether the fields that channel relies on are filled."""
    results = []
    for channel in channels:
        if "Banner" in channel:
            required, missing_status = ["what_happened", "timing", "action_required"], "needs-work"
        elif "Email" in channel:
            required, missing_status = ["what_happened", "who_affected", "user_impact", "what_to_do"], "needs-work"
        elif "Dashboard" in channel:
            required, missing_status = ["what_happened", "event_kind"], "incomplete"
        else:
            required, missing_status = ["what_happened"], "incomplete"

        missing = [field_id for field_id in required if not _is_filled(checklist, field_id)]
        if missing:
            results.append(ChannelQuality(
                channel=channel, status=missing_status, message=f"Still needs: {', '.join(missing)}"
            ))
        else:
            results.append(ChannelQuality(channel=channel, status="good", message="Ready"))
    return results
