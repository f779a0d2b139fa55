"""
Command-line helper for running the intake pipeline by hand.

Usage:
    python -m docintake.services.batch_loader ingest --inbox-dir data/inbox
    python -m docintake.services.batch_loader validate receipt.png
    python -m docintake.services.batch_loader estimate --count 40 --model gpt-4o
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _print_progress(index: int, total: int, label: str) -> None:
    print(f"  [{index + 1}/{total}] {label}")


def cmd_ingest(args: argparse.Namespace) -> None:
    from docintake.ingestion.pipeline import ingest_folder
    from docintake.services.identity import StaticTokenProvider

    provider = StaticTokenProvider(token=args.token, subject_id=args.subject) if args.token else None
    inbox_dir = Path(args.inbox_dir) if args.inbox_dir else None
    report = ingest_folder(
        inbox_dir,
        subject_id=args.subject,
        token_provider=provider,
        on_progress=_print_progress,
    )

    print("\n══════════════ Intake Summary ══════════════")
    print(f"  Documents      : {report.total}")
    print(f"  Successful     : {report.successful}")
    print(f"  Needs review   : {report.needs_review}")
    print(f"  Failed         : {report.failed}")
    print(f"  Skipped        : {report.skipped}")
    print(f"  Estimated cost : {report.estimated_cost:.5f}")
    print(f"  Cost saved     : {report.cost_saved:.5f}")
    print(f"  Elapsed        : {report.elapsed_seconds:.1f}s")
    print("════════════════════════════════════════════")
    for result in report.items:
        if result.success:
            status = "REVIEW" if result.needs_review else "OK"
        else:
            status = "SKIP" if result.skipped else "FAIL"
        detail = result.skip_reason or result.last_error or ""
        print(f"  {status:<6} {result.source_ref}  {detail}")


def cmd_validate(args: argparse.Namespace) -> None:
    from docintake.ingestion.pipeline import load_item
    from docintake.ingestion.validation import ContentValidator

    validator = ContentValidator()
    for path in args.files:
        outcome = validator.validate(load_item(Path(path)))
        print(f"── {path}: {'valid' if outcome.is_valid else 'INVALID'}")
        for issue in outcome.errors:
            print(f"   {issue.code.value}: {issue.message}")
        for warning in outcome.warnings:
            print(f"   warning: {warning}")


def cmd_estimate(args: argparse.Namespace) -> None:
    from docintake.ingestion.costs import estimate_processing_cost

    cost = estimate_processing_cost(args.count, args.tokens, args.model)
    print(f"{args.count} documents × {args.tokens} tokens on {args.model}: ≈{cost:.5f}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Receipt intake pipeline CLI",
        prog="python -m docintake.services.batch_loader",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # ingest
    p_ingest = sub.add_parser("ingest", help="Extract every document in a folder")
    p_ingest.add_argument("--inbox-dir", type=str, default=None, help="Override inbox directory")
    p_ingest.add_argument("--subject", type=str, default="cli", help="Subject id for rate limiting")
    p_ingest.add_argument("--token", type=str, default=None, help="Bearer token for the backend")
    p_ingest.set_defaults(func=cmd_ingest)

    # validate
    p_validate = sub.add_parser("validate", help="Run content validation only")
    p_validate.add_argument("files", nargs="+", help="Files to validate")
    p_validate.set_defaults(func=cmd_validate)

    # estimate
    p_estimate = sub.add_parser("estimate", help="Estimate extraction cost")
    p_estimate.add_argument("--count", type=int, required=True, help="Number of documents")
    p_estimate.add_argument("--tokens", type=int, default=1000, help="Average tokens per document")
    p_estimate.add_argument("--model", type=str, default="gpt-4o-mini", help="Model tier")
    p_estimate.set_defaults(func=cmd_estimate)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
