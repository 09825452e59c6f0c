"""Persist reconciled library entries to a Store in bounded batches."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Iterable, Protocol, Sequence

from errors import BatchRejectedError, StoreUnavailableError
from models import LoadReport, ReconciledLibraryEntry

BATCH_SIZE = int(os.getenv("LOAD_BATCH_SIZE", "50"))
LOAD_WORKERS = int(os.getenv("LOAD_WORKERS", "2"))

LOGGER = logging.getLogger(__name__)


class Store(Protocol):
    """Upsert-by-key persistence contract.

    Implementations raise BatchRejectedError when the batch violates a
    constraint and StoreUnavailableError when the backend cannot be reached.
    Collisions on ``(owner, external_id)`` are last-write-wins.
    """

    def upsert(self, entries: Sequence[ReconciledLibraryEntry], owner: str | None = None) -> None:
        ...


def partition(
    entries: Iterable[ReconciledLibraryEntry],
    batch_size: int = BATCH_SIZE,
) -> list[list[ReconciledLibraryEntry]]:
    """Split entries into fixed-size batches keyed uniquely by external_id.

    A repeated id keeps its first position but the last value, so one id can
    never land in two batches that run concurrently.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    unique: dict[str, ReconciledLibraryEntry] = {}
    for entry in entries:
        unique[entry.external_id] = entry

    ordered = list(unique.values())
    return [ordered[i : i + batch_size] for i in range(0, len(ordered), batch_size)]


def load(
    store: Store,
    entries: Iterable[ReconciledLibraryEntry],
    owner: str | None = None,
    *,
    batch_size: int = BATCH_SIZE,
    max_workers: int = LOAD_WORKERS,
    cancel_event: threading.Event | None = None,
) -> LoadReport:
    """Upsert every batch independently and report what was accepted.

    A rejected batch is logged, counted and skipped. StoreUnavailableError
    aborts the whole load: batches not yet started are cancelled and the
    error propagates. Setting ``cancel_event`` stops new batches from being
    started; batches already in flight finish.
    """
    batches = partition(entries, batch_size)
    report = LoadReport()
    if not batches:
        LOGGER.info("Load: nothing to persist")
        return report

    workers = max(1, max_workers)
    remaining = iter(enumerate(batches, start=1))
    pending: dict[Future[None], tuple[int, list[ReconciledLibraryEntry]]] = {}

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="load") as executor:
        try:
            while True:
                while len(pending) < workers:
                    if cancel_event is not None and cancel_event.is_set():
                        report.cancelled = True
                        break
                    item = next(remaining, None)
                    if item is None:
                        break
                    index, batch = item
                    report.attempted_batches += 1
                    pending[executor.submit(store.upsert, batch, owner=owner)] = (index, batch)

                if not pending:
                    break

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index, batch = pending.pop(future)
                    try:
                        future.result()
                    except BatchRejectedError as exc:
                        report.rejected_batches += 1
                        report.rejected_count += len(batch)
                        LOGGER.warning(
                            "Load: batch %s/%s rejected (size=%s): %s", index, len(batches), len(batch), exc
                        )
                        continue
                    report.accepted_count += len(batch)
                    LOGGER.info("Load: batch %s/%s accepted (size=%s)", index, len(batches), len(batch))
        except StoreUnavailableError as exc:
            for future in pending:
                future.cancel()
            LOGGER.error("Load: store unavailable, aborting remaining batches: %s", exc)
            raise

    if report.cancelled:
        LOGGER.info("Load: cancelled after %s/%s batches", report.attempted_batches, len(batches))

    LOGGER.info(
        "Load complete: batches=%s accepted=%s rejected_batches=%s rejected_entries=%s",
        report.attempted_batches,
        report.accepted_count,
        report.rejected_batches,
        report.rejected_count,
    )
    return report
