"""
Evaluation Reporting Module

Writes a JSON report for one evaluation run: configuration, per-case results
and summary statistics. Reports are timestamped so successive runs of the
harness (e.g. before and after a prompt or pipeline change) can be compared.

Report Components:
- Run metadata: timestamp, provider and model, runtime, token usage
- Summary: pass rate, parse failures, stories returned, field acceptance counts
- Full per-case results
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)


def summarize_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Aggregate per-case rows into summary statistics.

    Returns:
        Dictionary with case counts, pass rate, parse failures, stories
        returned, and how often each field id was accepted
    """
    if not results:
        return {"total_cases": 0, "passed": 0, "pass_rate": 0.0}

    df = pd.DataFrame(results)
    accepted = df["accepted_ids"].dropna() if "accepted_ids" in df.columns else pd.Series(dtype=object)
    field_counts = accepted.explode().dropna().value_counts().to_dict()

    return {
        "total_cases": int(len(df)),
        "passed": int(df["passed"].sum()),
        "pass_rate": round(float(df["passed"].mean()), 3),
        "parse_failures": int(df["error"].notna().sum()) if "error" in df.columns else 0,
        "stories_returned": int(df["story_present"].fillna(False).astype(bool).sum()) if "story_present" in df.columns else 0,
        "cases_by_mode": {str(k): int(v) for k, v in df["mode"].value_counts().items()},
        "accepted_field_counts": {str(k): int(v) for k, v in field_counts.items()},
        "failed_cases": df.loc[~df["passed"].astype(bool), "name"].tolist(),
    }


def generate_report(report_context: Dict[str, Any], output_dir: Union[str, Path] = "logs") -> Optional[str]:
    """
    Compile and save an evaluation report.

    Args:
        report_context: Run data with keys `results`, `runtime_seconds`,
            `total_input_tokens`, `total_output_tokens`, `llm_config`,
            `cases_file`
        output_dir: Directory for the report file, created if missing

    Returns:
        Path of the written report, or None if it could not be saved
    """
    results = report_context.get('results', [])
    llm_config = dict(report_context.get('llm_config') or {})
    # Never write credentials to disk
    llm_config.pop('api_key', None)

    report_data = {
        "report_timestamp": datetime.now().isoformat(),
        "cases_file": report_context.get('cases_file'),
        "run_info": {
            "live": bool(report_context.get('live')),
            "provider": llm_config.get('provider'),
            "model": llm_config.get('model'),
            "runtime_seconds": report_context.get('runtime_seconds', 0.0),
            "total_input_tokens": report_context.get('total_input_tokens', 0),
            "total_output_tokens": report_context.get('total_output_tokens', 0),
        },
        "llm_config_used": llm_config,
        "summary": summarize_results(results),
        "full_results": results,
    }

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    report_path = Path(output_dir) / f"eventstory_eval_{timestamp}.json"

    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, 'w', encoding='utf-8') as f:
            json.dump(report_data, f, indent=4, default=str)
    except OSError as e:
        logger.error("Failed to save report: %s", e)
        return None

    logger.info("Report saved to %s", report_path)
    return str(report_path)
