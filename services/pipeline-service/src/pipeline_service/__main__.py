"""Run the analysis pipeline for one paper and wait for it to finish.

Usage:
    python -m pipeline_service <paper_id> <user_id>
    python -m pipeline_service <paper_id> <user_id> --init-db
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv
from paperflow_shared.storage import create_db_and_tables, get_engine

from pipeline_service.errors import PipelineAbortedError, PipelineConfigurationError
from pipeline_service.orchestrator import PipelineOutcome
from pipeline_service.params import PAPER_ID_KEY, resolve_identifier
from pipeline_service.runtime import get_broadcaster, get_launcher


def _progress_key(raw_paper_id: str) -> str | None:
    """Document id the orchestrator broadcasts under, or None if unparseable."""
    try:
        return str(resolve_identifier({PAPER_ID_KEY: raw_paper_id}, PAPER_ID_KEY))
    except PipelineConfigurationError:
        return None


def _print_stages(outcome: PipelineOutcome) -> None:
    for key, result in outcome.stage_results.items():
        status = "ok" if result.success else f"FAILED ({result.error_message})"
        seconds = result.processing_seconds or 0.0
        print(f"  {key:<32} {status} [{seconds:.1f}s]")


def main() -> int:
    """Launch a run and print per-stage status."""
    parser = argparse.ArgumentParser(description="Run the paper analysis pipeline")
    parser.add_argument("paper_id", help="Paper to analyze")
    parser.add_argument("user_id", help="User requesting the analysis")
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables before launching",
    )
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.init_db:
        create_db_and_tables(get_engine())

    progress_key = _progress_key(args.paper_id)
    if progress_key is not None:
        get_broadcaster().subscribe(
            progress_key,
            "cli",
            lambda update: print(update.formatted_progress),
        )
    launcher = get_launcher()
    try:
        launched = launcher.launch(args.paper_id, args.user_id)
        if not launched.accepted or launched.future is None:
            print(f"Launch rejected: {launched.reason}", file=sys.stderr)
            return 2

        try:
            outcome = launched.future.result()
        except PipelineAbortedError as exc:
            print(f"Pipeline aborted at {exc.stage}: {exc}", file=sys.stderr)
            return 1
        except Exception as exc:
            print(f"Pipeline failed: {exc}", file=sys.stderr)
            return 1
    finally:
        launcher.shutdown()

    print(f"Run {outcome.run_id} finished for paper {outcome.paper_id}")
    _print_stages(outcome)
    return 0


if __name__ == "__main__":
    sys.exit(main())
