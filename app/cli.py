"""
CLI Entry Point

Command-line access to the EventStory parsing pipeline and evaluation harness.

Commands:
- parse:    repair and parse a raw model response, print the payload as JSON
- validate: validate a raw model response against the checklist
- evaluate: run evaluation cases (replayed or live) and write a report
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from eventstory.config import load_llm_config
from eventstory.core.checklist import build_field_schema, create_checklist, load_checklist_config, mark_verified
from eventstory.core.evaluator import load_cases, run_evaluation
from eventstory.core.extractor import Extractor
from eventstory.core.json_repair import JsonRepairError, robust_json_parse
from eventstory.core.reporter import generate_report
from eventstory.core.validator import parse_analysis_response, parse_text_analysis_response

logger = logging.getLogger(__name__)


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _parse_verified(pairs: List[str]) -> Dict[str, str]:
    """`ID=VALUE` pairs; a bare `ID` is recorded with the value "confirmed"."""
    verified = {}
    for pair in pairs:
        field_id, sep, value = pair.partition("=")
        verified[field_id.strip()] = value.strip() if sep else "confirmed"
    return verified


def cmd_parse(args: argparse.Namespace) -> int:
    raw = _read_text(args.file)
    try:
        payload = robust_json_parse(raw)
    except JsonRepairError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    raw = _read_text(args.file)
    config = load_checklist_config(args.checklist)
    schema = build_field_schema(config)
    checklist = mark_verified(create_checklist(config), _parse_verified(args.verified))

    if args.mode == "full":
        result = parse_text_analysis_response(raw, checklist, schema)
    else:
        result = parse_analysis_response(raw, checklist, schema)

    print(result.model_dump_json(indent=2))
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    cases = load_cases(args.cases)
    config = load_checklist_config(args.checklist)
    schema = build_field_schema(config)

    llm_config = load_llm_config(args.config)
    extractor = Extractor(llm_config, schema=schema) if args.live else None
    if args.live:
        # Recorded responses would shadow the live call
        cases = [case.model_copy(update={"raw_response": None}) for case in cases]

    def progress(completed: int, total: int) -> None:
        logger.info("Evaluated %d/%d cases", completed, total)

    results, runtime, in_tokens, out_tokens = run_evaluation(
        cases,
        checklist_config=config,
        schema=schema,
        extractor=extractor,
        max_workers=llm_config.get("concurrent_requests", 5),
        update_callback=progress,
    )

    for row in results:
        status = "PASS" if row["passed"] else "FAIL"
        detail = ""
        if row.get("missing_ids"):
            detail = f" missing={','.join(row['missing_ids'])}"
        elif row.get("source") == "skipped":
            detail = f" skipped: {row['error']}"
        print(f"[{status}] {row['name']}{detail}")

    passed = sum(1 for row in results if row["passed"])
    print(f"\n{passed}/{len(results)} cases passed in {runtime:.2f}s")

    report_path = generate_report(
        {
            "results": results,
            "runtime_seconds": runtime,
            "total_input_tokens": in_tokens,
            "total_output_tokens": out_tokens,
            "llm_config": llm_config,
            "cases_file": str(args.cases) if args.cases else "bundled sample cases",
            "live": args.live,
        },
        output_dir=args.output_dir,
    )
    if report_path:
        print(f"Report saved to {report_path}")

    return 0 if passed == len(results) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eventstory",
        description="Repair, parse and validate language model output for event stories",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Repair and parse a raw model response")
    parse_cmd.add_argument("file", help="File holding the raw response ('-' for stdin)")
    parse_cmd.set_defaults(func=cmd_parse)

    validate_cmd = subparsers.add_parser("validate", help="Validate a raw model response against the checklist")
    validate_cmd.add_argument("file", help="File holding the raw response ('-' for stdin)")
    validate_cmd.add_argument(
        "--mode",
        choices=["incremental", "full"],
        default="incremental",
        help="incremental: interview turn; full: hand-edited narrative (default: incremental)",
    )
    validate_cmd.add_argument("--checklist", type=str, help="Checklist YAML file (default: bundled event checklist)")
    validate_cmd.add_argument(
        "--verified",
        nargs="*",
        default=[],
        metavar="ID[=VALUE]",
        help="Fields the user already confirmed",
    )
    validate_cmd.set_defaults(func=cmd_validate)

    evaluate_cmd = subparsers.add_parser("evaluate", help="Run evaluation cases and write a report")
    evaluate_cmd.add_argument("cases", nargs="?", help="Cases YAML file (default: bundled sample cases)")
    evaluate_cmd.add_argument("--live", action="store_true", help="Call the configured model instead of replaying")
    evaluate_cmd.add_argument("--config", type=str, help="LLM configuration YAML file")
    evaluate_cmd.add_argument("--checklist", type=str, help="Checklist YAML file (default: bundled event checklist)")
    evaluate_cmd.add_argument("--output-dir", type=str, default="logs", help="Report directory (default: logs)")
    evaluate_cmd.set_defaults(func=cmd_evaluate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return args.func(args)
    except (OSError, yaml.YAMLError, ValidationError, ValueError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
