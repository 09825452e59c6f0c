"""One import run: scrape and/or read exports, reconcile, persist, report."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator

from archive_auth import AuthSessionManager
from archive_scraper import SAMPLE_FALLBACK_ENABLED, scrape_library
from batch_loader import Store, load
from errors import ParseError, PartialImportError, StoreUnavailableError
from models import ImportReport, Origin, ScrapeKind, ScrapeResult, WorkRecord
from reconcile import reconcile
from session_store import SessionStore
from work_extractor import extract

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ImportRequest:
    """Everything a caller supplies for one import.

    ``identity`` is the archive username; it doubles as the owner key under
    which entries are stored. Export payloads are raw file contents.
    """

    identity: str = ""
    secret: str = field(default="", repr=False)
    live: bool = True
    bookmarks_html: str | bytes | None = None
    history_json: str | bytes | None = None
    marked_for_later_json: str | bytes | None = None
    sample_fallback: bool = SAMPLE_FALLBACK_ENABLED
    persist_fallback: bool = False

    def export_payloads(self) -> Iterator[tuple[Origin, Any]]:
        if self.bookmarks_html is not None:
            yield Origin.BOOKMARKS_EXPORT, self.bookmarks_html
        if self.history_json is not None:
            yield Origin.HISTORY_EXPORT, self.history_json
        if self.marked_for_later_json is not None:
            yield Origin.MARKED_FOR_LATER_EXPORT, self.marked_for_later_json


def run_import(
    request: ImportRequest,
    store: Store,
    *,
    sessions: SessionStore | None = None,
    manager: AuthSessionManager | None = None,
    cancel_event: threading.Event | None = None,
    dry_run: bool = False,
) -> ImportReport:
    """Run one import and return the caller-facing report.

    Sources fail independently: a broken export file or a failed login is
    recorded in ``source_errors`` while the remaining sources continue.
    Records from a non-authenticated live fallback are reported but only
    persisted when ``request.persist_fallback`` is set.
    """
    sessions = sessions if sessions is not None else SessionStore()
    sessions.sweep()

    with sessions.exclusive(request.identity or "-"):
        report = ImportReport()
        records = _gather(request, report, sessions, manager)

        if not records:
            report.reason = "No works found in any source"
            LOGGER.warning("Import: identity=%s %s", request.identity or "-", report.reason)
            return report

        entries = reconcile(records)
        report.unique_works = len(entries)

        if dry_run:
            report.success = True
            LOGGER.info("[dry-run] Would persist %s unique works", len(entries))
            return report

        try:
            load_report = load(store, entries, owner=request.identity or None, cancel_event=cancel_event)
        except StoreUnavailableError as exc:
            report.reason = f"Store unavailable: {exc}"
            return report

        report.persisted_count = load_report.accepted_count
        report.rejected_batches = load_report.rejected_batches
        if load_report.cancelled:
            report.reason = f"Import cancelled after {load_report.attempted_batches} batches"
        elif load_report.rejected_batches and not load_report.accepted_count:
            report.reason = "All batches were rejected by the store"
        else:
            report.success = True
            if load_report.rejected_batches:
                report.reason = str(PartialImportError(load_report.rejected_batches, load_report.attempted_batches))

    LOGGER.info(
        "Import complete: identity=%s sources=%s unique=%s persisted=%s success=%s",
        request.identity or "-",
        report.source_counts,
        report.unique_works,
        report.persisted_count,
        report.success,
    )
    return report


def _gather(
    request: ImportRequest,
    report: ImportReport,
    sessions: SessionStore,
    manager: AuthSessionManager | None,
) -> list[WorkRecord]:
    records: list[WorkRecord] = []
    source = Origin.LIVE_SCRAPE.value

    if request.live and request.identity:
        try:
            scrape = scrape_library(
                request.identity,
                request.secret,
                manager=manager,
                sessions=sessions,
                sample_fallback=request.sample_fallback,
            )
        except Exception as exc:
            scrape = ScrapeResult(kind=ScrapeKind.NO_DATA, reason=f"unexpected error: {exc}")
            LOGGER.exception("Import: source=%s failed: %s", source, exc)
        report.scrape_kind = scrape.kind
        if scrape.kind is not ScrapeKind.AUTHENTICATED:
            report.source_errors[source] = f"{scrape.kind.value}: {scrape.reason}" if scrape.reason else scrape.kind.value

        if scrape.kind is ScrapeKind.AUTHENTICATED or request.persist_fallback:
            report.source_counts[source] = len(scrape.records)
            records.extend(scrape.records)
        else:
            report.source_counts[source] = 0
            if scrape.records:
                LOGGER.warning(
                    "Import: withholding %s %s records from the library", len(scrape.records), scrape.kind.value
                )

    for origin, payload in request.export_payloads():
        try:
            extracted = list(extract(origin, payload))
        except ParseError as exc:
            report.source_counts[origin.value] = 0
            report.source_errors[origin.value] = str(exc)
            LOGGER.warning("Import: source=%s skipped: %s", origin.value, exc)
            continue
        except Exception as exc:
            report.source_counts[origin.value] = 0
            report.source_errors[origin.value] = f"unexpected error: {exc}"
            LOGGER.exception("Import: source=%s failed: %s", origin.value, exc)
            continue
        report.source_counts[origin.value] = len(extracted)
        records.extend(extracted)

    return records
