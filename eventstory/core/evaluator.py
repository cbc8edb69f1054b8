"""
Pipeline Evaluation Harness

Runs a set of scenario cases through the parsing and validation pipeline and
scores the outcome of each one. Cases can be replayed offline from recorded
model responses, which makes the harness a regression suite for the repair
pipeline, or run live against the configured model to measure how well a
model and prompt combination extracts checklist values.

Scoring per case:
- accepted_ids: fields that passed validation
- missing_ids / unexpected_ids: difference against expected_ids
- story_present: whether a narrative came back
- passed: no missing ids, and story/error match the case's expectations

Cases run concurrently with a thread pool, since live cases spend almost all
of their time waiting on the model.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

from .checklist import create_checklist, default_checklist_config, mark_verified
from .extractor import Extractor
from .models import ChecklistConfig, EvaluationCase, EvaluationCaseList, FieldSchema, StoryAnalysisResult
from .validator import parse_analysis_response, parse_text_analysis_response

logger = logging.getLogger(__name__)

SAMPLE_CASES_PATH = Path(__file__).resolve().parent.parent / "assets" / "sample_cases.yml"


def load_cases(path: Optional[Union[str, Path]] = None) -> List[EvaluationCase]:
    """Load evaluation cases from a YAML file with a top-level `cases:` list."""
    cases_path = Path(path) if path else SAMPLE_CASES_PATH
    with open(cases_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return EvaluationCaseList.model_validate(data.get("cases", [])).root


def _run_case(
    case: EvaluationCase,
    checklist_config: ChecklistConfig,
    schema: Optional[FieldSchema],
    extractor: Optional[Extractor],
) -> Tuple[StoryAnalysisResult, str]:
    checklist = mark_verified(create_checklist(checklist_config), case.verified)

    if extractor is not None and case.raw_response is None:
        if case.mode == "full":
            return extractor.analyze_text(case.text or "", checklist), "live"
        return extractor.analyze_conversation(case.conversation, checklist), "live"

    if case.raw_response is None:
        raise ValueError(f"Case '{case.name}' has no raw_response and no extractor was given")
    if case.mode == "full":
        return parse_text_analysis_response(case.raw_response, checklist, schema), "replay"
    return parse_analysis_response(case.raw_response, checklist, schema), "replay"


def evaluate_case(
    case: EvaluationCase,
    checklist_config: Optional[ChecklistConfig] = None,
    schema: Optional[FieldSchema] = None,
    extractor: Optional[Extractor] = None,
) -> Dict[str, Any]:
    """
    Run one case and score it.

    Returns:
        Flat result row suitable for a report table
    """
    checklist_config = checklist_config or default_checklist_config()
    result, source = _run_case(case, checklist_config, schema, extractor)

    accepted_ids = [item.id for item in result.items]
    missing_ids = [field_id for field_id in case.expected_ids if field_id not in accepted_ids]
    unexpected_ids = [field_id for field_id in accepted_ids if field_id not in case.expected_ids]
    story_present = result.story is not None
    has_error = result.error is not None

    passed = not missing_ids and has_error == case.expect_error
    if case.expect_story is not None and story_present != case.expect_story:
        passed = False

    return {
        "name": case.name,
        "mode": case.mode,
        "source": source,
        "accepted_ids": accepted_ids,
        "missing_ids": missing_ids,
        "unexpected_ids": unexpected_ids,
        "story_present": story_present,
        "error": result.error,
        "passed": passed,
        "result": result.model_dump(),
    }


def run_evaluation(
    cases: List[EvaluationCase],
    checklist_config: Optional[ChecklistConfig] = None,
    schema: Optional[FieldSchema] = None,
    extractor: Optional[Extractor] = None,
    max_workers: int = 5,
    update_callback: Optional[Callable[[int, int], None]] = None,
) -> Tuple[List[Dict[str, Any]], float, int, int]:
    """
    Evaluate all cases concurrently.

    Args:
        cases: Scenarios to run
        checklist_config: Checklist definition; the bundled one when omitted
        schema: Field schema override
        extractor: When given, cases without a recorded response run live
        max_workers: Thread pool size
        update_callback: Called with (completed, total) after each case

    Returns:
        Tuple of (result rows in case order, runtime seconds,
        input tokens, output tokens)
    """
    checklist_config = checklist_config or default_checklist_config()
    results: List[Optional[Dict[str, Any]]] = [None] * len(cases)
    start_time = time.time()

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {
            executor.submit(evaluate_case, case, checklist_config, schema, extractor): index
            for index, case in enumerate(cases)
        }

        for completed, future in enumerate(as_completed(futures), start=1):
            index = futures[future]
            try:
                results[index] = future.result()
            except (ValueError, KeyError) as e:
                logger.error("Case '%s' could not run: %s", cases[index].name, e)
                results[index] = {
                    "name": cases[index].name,
                    "mode": cases[index].mode,
                    "source": "skipped",
                    "error": str(e),
                    "passed": False,
                }
            if update_callback:
                update_callback(completed, len(cases))

    runtime = time.time() - start_time
    in_tokens = extractor.total_input_tokens if extractor else 0
    out_tokens = extractor.total_output_tokens if extractor else 0
    return results, runtime, in_tokens, out_tokens
