"""CLI entrypoint for importing an archive reading library."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from archive_scraper import SAMPLE_FALLBACK_ENABLED
from csv_store import CsvStore
from models import ImportReport
from pipeline import ImportRequest, run_import
from supabase_store import SupabaseStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Import an archive reading library into a Store")
    parser.add_argument("--username", default=os.getenv("ARCHIVE_USERNAME", ""), help="Archive username (owner key)")
    parser.add_argument("--bookmarks", type=Path, default=None, help="Bookmarks export HTML file")
    parser.add_argument("--history", type=Path, default=None, help="Reading-history export JSON file")
    parser.add_argument("--marked-for-later", type=Path, default=None, help="Marked-for-later export JSON file")
    parser.add_argument("--no-live", action="store_true", help="Skip the live scrape and only read export files")
    parser.add_argument("--store", choices=["csv", "supabase"], default="csv", help="Where to persist entries")
    parser.add_argument("--csv-path", default=None, help="CSV file for --store csv (default CSV_OUTPUT_PATH)")
    parser.add_argument(
        "--sample-fallback",
        action="store_true",
        default=SAMPLE_FALLBACK_ENABLED,
        help="Allow the built-in sample dataset when the archive yields nothing",
    )
    parser.add_argument(
        "--persist-fallback",
        action="store_true",
        help="Also store works from a public or sample fallback scrape",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Extract and reconcile, then report without writing to the Store",
    )
    return parser.parse_args(argv)


def _read(path: Path | None) -> str | None:
    if path is None:
        return None
    return path.read_text(encoding="utf-8")


def build_request(args: argparse.Namespace) -> ImportRequest:
    return ImportRequest(
        identity=args.username,
        secret=os.getenv("ARCHIVE_PASSWORD", ""),
        live=not args.no_live,
        bookmarks_html=_read(args.bookmarks),
        history_json=_read(args.history),
        marked_for_later_json=_read(args.marked_for_later),
        sample_fallback=args.sample_fallback,
        persist_fallback=args.persist_fallback,
    )


def _log_report(report: ImportReport) -> None:
    for source, count in report.source_counts.items():
        logging.info("Source %s: %s works", source, count)
    for source, error in report.source_errors.items():
        logging.warning("Source %s: %s", source, error)
    if report.scrape_kind is not None:
        logging.info("Live scrape result: %s", report.scrape_kind.value)
    logging.info(
        "Run complete. unique=%s persisted=%s rejected_batches=%s success=%s",
        report.unique_works,
        report.persisted_count,
        report.rejected_batches,
        report.success,
    )
    if report.reason:
        logging.log(logging.INFO if report.success else logging.ERROR, "Reason: %s", report.reason)


def main(argv: list[str] | None = None) -> int:
    """Initialize config, run one import, and return the process exit code."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)

    try:
        request = build_request(args)
    except OSError as exc:
        logging.error("Could not read export file: %s", exc)
        return 1
    if request.live and not request.identity:
        logging.warning("No --username given; skipping the live scrape")

    if args.store == "supabase":
        try:
            store = SupabaseStore()
        except RuntimeError as exc:
            logging.error("%s", exc)
            return 1
    else:
        store = CsvStore(args.csv_path)

    try:
        report = run_import(request, store, dry_run=args.dry_run)
    finally:
        if isinstance(store, SupabaseStore):
            store.close()

    _log_report(report)
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
