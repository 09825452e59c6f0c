from __future__ import annotations

from datetime import UTC, datetime

import pytest

from models import Origin, ReadingStatus, WorkRecord
from reconcile import derive_progress, reconcile


def _record(
    external_id: str,
    status: ReadingStatus,
    origin: Origin = Origin.LIVE_SCRAPE,
    **kwargs,
) -> WorkRecord:
    defaults = {"title": f"Work {external_id}", "author": "someone"}
    defaults.update(kwargs)
    return WorkRecord(external_id=external_id, origin=origin, observed_status=status, **defaults)


def test_higher_priority_status_wins() -> None:
    records = [
        _record("9", ReadingStatus.TO_READ, Origin.MARKED_FOR_LATER_EXPORT),
        _record("9", ReadingStatus.READING, Origin.LIVE_SCRAPE),
    ]

    entries = reconcile(records)

    assert len(entries) == 1
    assert entries[0].external_id == "9"
    assert entries[0].resolved_status is ReadingStatus.READING


@pytest.mark.parametrize("completed_first", [True, False])
def test_completed_wins_regardless_of_order(completed_first: bool) -> None:
    completed = _record("1", ReadingStatus.COMPLETED, Origin.HISTORY_EXPORT, title="From history")
    bookmarked = _record("1", ReadingStatus.WANT_TO_READ, Origin.BOOKMARKS_EXPORT, title="From bookmarks")
    records = [completed, bookmarked] if completed_first else [bookmarked, completed]

    (entry,) = reconcile(records)

    assert entry.resolved_status is ReadingStatus.COMPLETED
    assert entry.title == "From history"
    assert entry.origins == frozenset({Origin.HISTORY_EXPORT, Origin.BOOKMARKS_EXPORT})


def test_equal_priority_keeps_first_seen() -> None:
    (entry,) = reconcile(
        [
            _record("2", ReadingStatus.READING, title="first"),
            _record("2", ReadingStatus.READING, title="second"),
        ]
    )
    assert entry.title == "first"


def test_output_has_one_entry_per_id_in_first_seen_order() -> None:
    records = [
        _record("b", ReadingStatus.TO_READ),
        _record("a", ReadingStatus.TO_READ),
        _record("b", ReadingStatus.COMPLETED),
        _record("c", ReadingStatus.READING),
    ]

    entries = reconcile(records)

    assert [e.external_id for e in entries] == ["b", "a", "c"]


def test_empty_input_gives_empty_output() -> None:
    assert reconcile([]) == []


def test_reconcile_is_idempotent() -> None:
    records = [
        _record("1", ReadingStatus.TO_READ, Origin.MARKED_FOR_LATER_EXPORT, tags=("x",)),
        _record("1", ReadingStatus.READING, chapters_current=2, chapters_total=4, tags=("y",)),
        _record("2", ReadingStatus.COMPLETED, Origin.HISTORY_EXPORT, visit_count=3),
    ]

    once = reconcile(records)
    twice = reconcile(once)

    assert twice == once


def test_losing_record_tags_and_dates_are_merged() -> None:
    early = datetime(2023, 1, 1, tzinfo=UTC)
    late = datetime(2024, 1, 1, tzinfo=UTC)
    loser = _record(
        "5",
        ReadingStatus.WANT_TO_READ,
        Origin.BOOKMARKS_EXPORT,
        tags=("Fluff", "Angst"),
        characters=("A",),
        bookmarked_at=early,
    )
    winner = _record(
        "5",
        ReadingStatus.COMPLETED,
        Origin.HISTORY_EXPORT,
        tags=("Angst", "Hurt/Comfort"),
        characters=("B",),
        visited_at=late,
        visit_count=7,
    )

    (entry,) = reconcile([loser, winner])

    assert entry.tags == ("Angst", "Hurt/Comfort", "Fluff")
    assert entry.characters == ("B", "A")
    assert entry.added_at == early
    assert entry.visited_at == late
    assert entry.visit_count == 7


def test_visit_count_takes_maximum_within_a_run() -> None:
    (entry,) = reconcile(
        [
            _record("3", ReadingStatus.COMPLETED, Origin.HISTORY_EXPORT, visit_count=5),
            _record("3", ReadingStatus.READING, visit_count=2),
        ]
    )
    assert entry.visit_count == 5


def test_progress_is_derived_from_resolved_status() -> None:
    entries = {
        e.external_id: e
        for e in reconcile(
            [
                _record("done", ReadingStatus.COMPLETED, chapters_current=3, chapters_total=10),
                _record("mid", ReadingStatus.READING, chapters_current=3, chapters_total=10),
                _record("todo", ReadingStatus.TO_READ, chapters_current=3, chapters_total=10),
            ]
        )
    }

    assert (entries["done"].progress_percentage, entries["done"].current_chapter) == (100, 10)
    assert (entries["mid"].progress_percentage, entries["mid"].current_chapter) == (30, 3)
    assert (entries["todo"].progress_percentage, entries["todo"].current_chapter) == (0, 1)


def test_derive_progress_edge_cases() -> None:
    assert derive_progress(ReadingStatus.COMPLETED, 4, None) == (100, 4)
    assert derive_progress(ReadingStatus.READING, 4, None) == (0, 4)
    assert derive_progress(ReadingStatus.READING, 12, 10) == (100, 12)
    assert derive_progress(ReadingStatus.WANT_TO_READ, 0, None) == (0, 1)
