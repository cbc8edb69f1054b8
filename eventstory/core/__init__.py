"""
Core parsing, validation and extraction modules.
"""

from .classification import compose_story, derive_classification
from .json_repair import JsonRepairError, parse_model_output, robust_json_parse
from .models import ExtractedItem, FieldSchema, StoryAnalysisResult, StoryClassification
from .validator import validate_full_text, validate_incremental

__all__ = [
    "compose_story",
    "derive_classification",
    "JsonRepairError",
    "parse_model_output",
    "robust_json_parse",
    "ExtractedItem",
    "FieldSchema",
    "StoryAnalysisResult",
    "StoryClassification",
    "validate_full_text",
    "validate_incremental",
]
