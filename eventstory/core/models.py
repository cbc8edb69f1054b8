"""
Data Models for the EventStory Extraction System

This module defines the Pydantic data models used throughout EventStory for
structured data handling and validation. Raw model output is never trusted:
it is repaired and parsed into plain dictionaries first, then turned into the
models below by the validation layer, so that everything handed back to the
interview logic has a known shape.

Model Groups:
- Extraction results: ExtractedItem, StoryAnalysisResult, RegexFallbackResult
- Checklist definition and state: FieldDefinition, ChecklistConfig,
  ChecklistItem, FieldSchema
- Interview input: ConversationEntry
- Evaluation harness: EvaluationCase, EvaluationCaseList, ModelResponse
- Classification: ImpactFactors, StoryClassification, ChannelQuality
"""

from pydantic import BaseModel, Field, RootModel
from typing import List, Dict, Iterable, Optional, Set, Union

FieldValue = Union[str, List[str]]


class ExtractedItem(BaseModel):
    """
    A single checklist fact extracted by the language model.

    The evidence is the verbatim phrase from the user's input that supports
    the value; the description is a short, human-checkable summary shown when
    the user is asked to confirm the extraction.
    """
    id: str = Field(..., description="Identifier of the checklist field this value belongs to.")
    value: FieldValue = Field(..., description="Extracted value, a string or a list of strings.")
    description: str = Field("", description="Short summary of the extraction for human confirmation.")
    evidence: str = Field(..., description="Exact quote from the source text supporting the value.")


class StoryAnalysisResult(BaseModel):
    """
    Validated outcome of one extraction call.

    Every item satisfies the field schema. The story is always a plain string
    or None, never the object shape some models return. A populated error
    means the response could not be parsed; the caller shows a generic warning
    and still uses the story if one was salvaged.
    """
    items: List[ExtractedItem] = Field(default_factory=list)
    story: Optional[str] = None
    error: Optional[str] = None


class RegexFallbackResult(BaseModel):
    """Items and story recovered by pattern matching from non-JSON output."""
    items: List[ExtractedItem] = Field(default_factory=list)
    story: Optional[str] = None


class FieldDefinition(BaseModel):
    """One checklist field as declared in the checklist configuration file."""
    id: str
    label: str = ""
    category: Optional[str] = None
    description: str = ""
    allowed_values: Optional[List[str]] = Field(
        None, description="Enum constraint; None means the field takes free text."
    )


class ChecklistConfig(BaseModel):
    """Root of the checklist YAML file."""
    fields: List[FieldDefinition]


class ChecklistItem(BaseModel):
    """
    Interview state of one checklist field.

    `filled` means a value is present; `verified` means the user confirmed it.
    Values extracted by the model are stored as filled but unverified until
    the user confirms them.
    """
    id: str
    label: str = ""
    category: Optional[str] = None
    filled: bool = False
    verified: bool = False
    value: Optional[FieldValue] = None
    description: Optional[str] = None
    evidence: Optional[str] = None
    source: Optional[str] = Field(None, description="'user' or 'llm'.")


class FieldSchema(RootModel):
    """
    Mapping from field identifier to its allowed values.

    A value of None marks a free-text field. The schema is always passed
    explicitly into the parsing and validation functions so they can serve
    any checklist, not just the bundled event checklist.
    """
    root: Dict[str, Optional[List[str]]]

    def known_ids(self) -> Set[str]:
        return set(self.root)

    def allowed_values(self, field_id: str) -> Optional[List[str]]:
        return self.root.get(field_id)

    def is_allowed(self, field_id: str, value: FieldValue) -> bool:
        """True if the value satisfies the field's enum constraint (if any)."""
        allowed = self.root.get(field_id)
        if allowed is None:
            return True
        if isinstance(value, list):
            return all(v in allowed for v in value)
        return value in allowed

    def restricted_to(self, field_ids: Iterable[str]) -> "FieldSchema":
        """Schema for exactly the given ids; ids unknown to this schema become free text."""
        return FieldSchema({field_id: self.root.get(field_id) for field_id in field_ids})


class ConversationEntry(BaseModel):
    """One answered interview question."""
    question: str
    selected_options: List[str] = Field(default_factory=list)
    freeform_text: str = ""


class ModelResponse(BaseModel):
    """Raw text returned by a model call, with token usage for cost tracking."""
    raw_text: str
    input_tokens: int = 0
    output_tokens: int = 0


class EvaluationCase(BaseModel):
    """
    One scenario for the evaluation harness.

    A case either replays a recorded `raw_response` (offline) or, when run
    live, sends the `conversation` (incremental mode) or `text` (full mode)
    to the configured model.
    """
    name: str
    mode: str = Field("incremental", description="'incremental' or 'full'.")
    raw_response: Optional[str] = None
    conversation: List[ConversationEntry] = Field(default_factory=list)
    text: Optional[str] = None
    verified: Dict[str, FieldValue] = Field(
        default_factory=dict, description="Fields the user already confirmed, with their values."
    )
    expected_ids: List[str] = Field(default_factory=list)
    expect_story: Optional[bool] = None
    expect_error: bool = False


class EvaluationCaseList(RootModel):
    """Container for the cases of one evaluation run."""
    root: List[EvaluationCase]


class ImpactFactors(BaseModel):
    """Inputs to severity scoring, taken from the notification-related fields."""
    user_impact: str = ""
    user_scope: str = ""
    timing: str = ""
    lead_time: str = ""
    security_compliance: Optional[bool] = None
    action_required: str = ""


class StoryClassification(BaseModel):
    """
    Message type and delivery channels derived from a partially filled checklist.

    Severity is only set for notifications, and only when a severity rule
    is supplied.
    """
    type: str
    severity: Optional[str] = Field(None, description="CRITICAL, HIGH, MEDIUM, LOW or None.")
    channels: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)


class ChannelQuality(BaseModel):
    """Whether the checklist holds what one delivery channel needs."""
    channel: str
    status: str = Field(..., description="'good', 'needs-work' or 'incomplete'.")
    message: str
