"""Collapse WorkRecords that share an external id into library entries."""

from __future__ import annotations

import logging
from dataclasses import fields
from typing import Iterable, Union

from models import Origin, ReadingStatus, ReconciledLibraryEntry, WorkRecord

LOGGER = logging.getLogger(__name__)

Reconcilable = Union[WorkRecord, ReconciledLibraryEntry]

# Set-like tag groups that are unioned across every record of a work.
_UNION_FIELDS = ("fandoms", "relationships", "characters", "tags", "warnings", "categories")

# Descriptive fields copied from the winning record.
_DESCRIPTIVE_FIELDS = tuple(
    f.name
    for f in fields(WorkRecord)
    if f.name not in {"external_id", "origin", "observed_status", "visit_count", *_UNION_FIELDS}
)


def reconcile(records: Iterable[Reconcilable]) -> list[ReconciledLibraryEntry]:
    """Fold records into exactly one entry per external_id.

    The first record seen for an id is the winner until a later record has a
    strictly higher status priority (completed > reading > want-to-read >
    to-read); ties keep the earlier winner. The winner supplies the
    descriptive fields, while tag groups, provenance and dates from every
    contributing record are merged in so that nothing observed is lost.

    Already-reconciled entries are accepted as input, which makes the
    operation idempotent: ``reconcile(reconcile(x)) == reconcile(x)``.
    Output order follows first appearance of each id.
    """
    winners: dict[str, Reconcilable] = {}
    merged: dict[str, _Merged] = {}
    seen = 0

    for record in records:
        seen += 1
        key = record.external_id
        if not key:
            continue

        if key not in winners:
            winners[key] = record
            merged[key] = _Merged.start(record)
            continue

        if record.status.priority > winners[key].status.priority:
            winners[key] = record
            merged[key].absorb(record, winner_first=True)
        else:
            merged[key].absorb(record, winner_first=False)

    entries = [_build_entry(winners[key], merged[key]) for key in winners]
    LOGGER.info("Reconcile: input=%s unique=%s", seen, len(entries))
    return entries


def derive_progress(status: ReadingStatus, chapters_current: int, chapters_total: int | None) -> tuple[int, int]:
    """Return ``(progress_percentage, current_chapter)`` for a resolved status."""
    if status is ReadingStatus.COMPLETED:
        return 100, chapters_total if chapters_total is not None else chapters_current
    if status is ReadingStatus.READING:
        if chapters_total:
            return min(100, round(chapters_current * 100 / chapters_total)), chapters_current
        return 0, chapters_current
    return 0, 1


class _Merged:
    """Fields accumulated across every record contributing to one id."""

    __slots__ = ("groups", "origins", "added_at", "visit_count")

    def __init__(self) -> None:
        self.groups: dict[str, tuple[str, ...]] = {}
        self.origins: set[Origin] = set()
        self.added_at = None
        self.visit_count = 0

    @classmethod
    def start(cls, record: Reconcilable) -> _Merged:
        merged = cls()
        merged.groups = {name: tuple(getattr(record, name)) for name in _UNION_FIELDS}
        merged.origins = set(record.origins)
        merged.added_at = record.added_at
        merged.visit_count = record.visit_count
        return merged

    def absorb(self, record: Reconcilable, *, winner_first: bool) -> None:
        for name in _UNION_FIELDS:
            incoming = tuple(getattr(record, name))
            current = self.groups[name]
            ordered = incoming + current if winner_first else current + incoming
            self.groups[name] = tuple(dict.fromkeys(ordered))
        self.origins |= set(record.origins)
        if record.added_at is not None and (self.added_at is None or record.added_at < self.added_at):
            self.added_at = record.added_at
        self.visit_count = max(self.visit_count, record.visit_count)


def _build_entry(winner: Reconcilable, merged: _Merged) -> ReconciledLibraryEntry:
    status = winner.status
    progress, current_chapter = derive_progress(status, winner.chapters_current, winner.chapters_total)
    descriptive = {name: getattr(winner, name) for name in _DESCRIPTIVE_FIELDS}
    return ReconciledLibraryEntry(
        external_id=winner.external_id,
        resolved_status=status,
        progress_percentage=progress,
        current_chapter=current_chapter,
        origins=frozenset(merged.origins),
        visit_count=merged.visit_count,
        added_at=merged.added_at,
        **merged.groups,
        **descriptive,
    )
