"""Pipeline CLI Entry Point

Provides the command-line interface for the tender monitoring pipeline.
Handles argument parsing, logging configuration, and wiring of the stores,
quota tracker and enricher around one pipeline run.

Usage:
    tender-pipeline --archive data/feed.zip --test
    python src/run_pipeline.py --data-dir data --output-dir output
"""

import argparse
import logging
import signal
import time
from datetime import date
from pathlib import Path
from typing import Any, Dict

from tender_pipeline.config import DATA_DIR, load_criteria
from tender_pipeline.enrichment import TenderEnricher
from tender_pipeline.history import HistoryStore
from tender_pipeline.loaders import download_archive, feed_url, load_archive, period_label
from tender_pipeline.models import RunStatus
from tender_pipeline.pipeline import RunState, run_pipeline, write_run_outputs
from tender_pipeline.results import ResultsStore
from tender_pipeline.usage import QuotaTracker


def configure_logging() -> None:
    """Configure logging with both console and file output.

    Sets up:
      - Root logger at DEBUG level
      - Console handler at INFO level for user-facing messages
      - File handler at DEBUG level for detailed troubleshooting
      - Reduced verbosity for httpx, openai and urllib3 loggers
    """
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / "pipeline.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    for noisy in ("httpx", "openai", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Clear existing handlers to avoid duplicates if run multiple times
    logger.handlers.clear()
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)


STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_stop_handlers(state: RunState) -> Dict[int, Any]:
    """Turn SIGINT/SIGTERM into a stop request for the run.

    The entry being enriched finishes (its quota is already spent) and the
    run ends before the next one, so finished tenders are still saved.
    Returns the previous handlers for ``restore_handlers``.
    """
    logger = logging.getLogger(__name__)

    def request_stop(signum, frame):
        logger.warning(
            "Received %s; stopping after the current tender",
            signal.Signals(signum).name,
        )
        state.request_stop()

    previous = {}
    for sig in STOP_SIGNALS:
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, request_stop)
    return previous


def restore_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Public tender monitoring pipeline"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--archive",
        type=Path,
        default=None,
        help="Path to a local bulk archive (.zip).",
    )
    source.add_argument(
        "--url",
        default=None,
        help="Archive URL (default: the current month's feed).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.json"),
        help="JSON config file with filter criteria.",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DATA_DIR,
        help="Directory holding history.json, results.json and api-usage.json.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Directory where run output files will be written.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Optional limit on the number of relevant tenders to enrich.",
    )
    parser.add_argument(
        "--test",
        action="store_true",
        help="Run without saving history or results.",
    )
    parser.add_argument(
        "--no-history",
        action="store_true",
        help="Overwrite output files instead of creating timestamped versions",
    )
    parser.add_argument(
        "--forget",
        metavar="ID",
        default=None,
        help="Remove a tender id from history and stored results, then exit.",
    )
    parser.add_argument(
        "--show-usage",
        action="store_true",
        help="Print today's API usage and exit.",
    )
    return parser


def main(argv=None) -> int:
    """
    CLI entrypoint for the tender pipeline.

    Returns a Unix-style exit code: 0 on success or when there was nothing
    new to process, 1 on failure.
    """
    configure_logging()
    logger = logging.getLogger(__name__)

    args = build_parser().parse_args(argv)

    criteria = load_criteria(args.config)
    history_store = HistoryStore(args.data_dir / "history.json")
    results_store = ResultsStore(args.data_dir / "results.json")
    quota = QuotaTracker(args.data_dir / "api-usage.json", daily_limit=criteria.daily_call_limit)

    if args.show_usage:
        stats = quota.stats()
        logger.info(
            "API usage today: %d/%d (%d%%), remaining %d, 7-day average %d",
            stats.today, stats.limit, stats.percentage, stats.remaining, stats.avg_last7,
        )
        return 0

    if args.forget:
        removed_history = history_store.remove(args.forget)
        removed_results = results_store.remove(args.forget)
        logger.info(
            "Forget %s: history=%s results=%s", args.forget, removed_history, removed_results
        )
        return 0

    logger.info("=== Starting tender monitoring pipeline ===")
    logger.info("Window: %d days", criteria.window_days)
    logger.info("Budget thresholds: local=%.0f national=%.0f", criteria.min_budget_local, criteria.min_budget_national)
    logger.info("Limit: %s", args.limit if args.limit else "None (all relevant tenders)")
    logger.info("Test mode: %s", args.test)

    try:
        start_time = time.time()
        today = date.today()

        if args.archive is not None:
            payload = load_archive(args.archive)
        else:
            payload = download_archive(args.url or feed_url(today.year, today.month))
        date_str = period_label(today)

        state = RunState()
        previous_handlers = install_stop_handlers(state)
        try:
            result = run_pipeline(
                payload,
                criteria=criteria,
                history_store=history_store,
                results_store=results_store,
                enricher=TenderEnricher(quota),
                date_str=date_str,
                test_mode=args.test,
                on_event=state.handle,
                should_stop=state.stop_requested,
                limit=args.limit,
            )
        finally:
            restore_handlers(previous_handlers)
        output_paths = write_run_outputs(result, args.output_dir, keep_history=not args.no_history)

        elapsed_time = time.time() - start_time

        # Comprehensive summary
        logger.info("=" * 70)
        logger.info("Pipeline finished (%s) in %.2fs", result.status.value, elapsed_time)
        logger.info("")
        logger.info("Summary:")
        logger.info("  Period:     %s", date_str)
        logger.info("  Entries:    %d", result.total_entries)
        logger.info("  Relevant:   %d", result.counters.relevant)
        logger.info("  Enriched:   %d", len(result.tenders))
        if result.failed_ids:
            logger.info("  Failed:     %s", ", ".join(result.failed_ids))
        if result.status is RunStatus.EMPTY:
            logger.info("  Nothing new to send.")
        elif result.status is RunStatus.CANCELLED:
            logger.info("  Stopped early; tenders enriched so far were kept.")
        logger.info("")
        logger.info("Output files:")
        for name, path in output_paths.items():
            logger.info("  %-12s %s", f"{name}:", path)
        logger.info("=" * 70)

    except Exception as e:
        logger.exception(f"Pipeline failed with an unhandled exception: {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
