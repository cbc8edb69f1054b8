"""
Checklist Definition and State

The checklist is the list of facts an event notification needs (what
happened, who is affected, timing, ...). Its definition lives in a YAML file
so that field identifiers and enum allow-lists have exactly one source of
truth, shared by the interview, the prompts, the validator and the
evaluation harness.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from .models import ChecklistConfig, ChecklistItem, ExtractedItem, FieldSchema

logger = logging.getLogger(__name__)

DEFAULT_CHECKLIST_PATH = Path(__file__).resolve().parent.parent / "assets" / "default_checklist.yml"


def load_checklist_config(path: Optional[Union[str, Path]] = None) -> ChecklistConfig:
    """
    Load and validate a checklist definition from YAML.

    Args:
        path: Checklist file; the bundled event checklist when omitted

    Returns:
        Validated checklist configuration

    Raises:
        FileNotFoundError, yaml.YAMLError, pydantic.ValidationError
    """
    config_path = Path(path) if path else DEFAULT_CHECKLIST_PATH
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    config = ChecklistConfig.model_validate(data)
    logger.debug("Loaded %d checklist fields from %s", len(config.fields), config_path)
    return config


def build_field_schema(config: ChecklistConfig) -> FieldSchema:
    """Field id -> allowed values (None for free text)."""
    return FieldSchema({field.id: field.allowed_values for field in config.fields})


@lru_cache(maxsize=1)
def default_checklist_config() -> ChecklistConfig:
    return load_checklist_config()


def default_field_schema() -> FieldSchema:
    return build_field_schema(default_checklist_config())


def create_checklist(config: Optional[ChecklistConfig] = None) -> List[ChecklistItem]:
    """Fresh, empty interview state for every field in the definition."""
    config = config or default_checklist_config()
    return [
        ChecklistItem(id=field.id, label=field.label, category=field.category)
        for field in config.fields
    ]


def get_item(checklist: Iterable[ChecklistItem], field_id: str) -> ChecklistItem:
    for item in checklist:
        if item.id == field_id:
            return item
    raise KeyError(f"Unknown checklist item: {field_id}")


def mark_verified(checklist: List[ChecklistItem], verified: Dict[str, object]) -> List[ChecklistItem]:
    """Record user-confirmed values, e.g. answers picked from an option list."""
    for field_id, value in verified.items():
        item = get_item(checklist, field_id)
        item.value = value
        item.filled = True
        item.verified = True
        item.source = "user"
    return checklist


def apply_extracted_items(checklist: List[ChecklistItem], items: Iterable[ExtractedItem]) -> List[ChecklistItem]:
    """
    Store model extractions in the checklist as filled but unverified.

    Verified fields are never overwritten; the user has to confirm each
    model-sourced value before it counts as verified.
    """
    by_id = {item.id: item for item in checklist}
    for extracted in items:
        target = by_id.get(extracted.id)
        if target is None or target.verified:
            continue
        target.value = extracted.value
        target.description = extracted.description
        target.evidence = extracted.evidence
        target.filled = True
        target.verified = False
        target.source = "llm"
    return checklist
