"""Shared test fixtures for pytest.

Everything here is built from the bundled event checklist, so the tests
exercise the same field ids and allow-lists the application ships with.
"""

from __future__ import annotations

import json
from typing import Any

import pytest

from eventstory.core.checklist import create_checklist, default_field_schema
from eventstory.core.models import ChecklistItem, FieldSchema


@pytest.fixture
def schema() -> FieldSchema:
    """Field schema of the bundled event checklist."""
    return default_field_schema()


@pytest.fixture
def checklist() -> list[ChecklistItem]:
    """Fresh, all-empty interview state."""
    return create_checklist()


@pytest.fixture
def tmp_logs(tmp_path):
    """Directory for reports written during a test."""
    return tmp_path / "logs"


def make_response(items: list[dict[str, Any]], story: Any = None, include_story: bool = True) -> str:
    """Serialize a well-formed model response."""
    payload: dict[str, Any] = {"items": items}
    if include_story:
        payload["story"] = story
    return json.dumps(payload)


def item(field_id: str, value: Any, description: str = "x", evidence: str = "y") -> dict[str, Any]:
    """Raw item dict as a model would return it."""
    return {"id": field_id, "value": value, "description": description, "evidence": evidence}
