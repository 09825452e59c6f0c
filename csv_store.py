"""CSV file Store for reconciled library entries."""

from __future__ import annotations

import csv
import json
import logging
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

from errors import BatchRejectedError, StoreUnavailableError
from models import ReconciledLibraryEntry

CSV_OUTPUT_PATH = os.getenv("CSV_OUTPUT_PATH", "library.csv")

LOGGER = logging.getLogger(__name__)

CSV_COLUMNS = [
    "owner",
    "external_id",
    "title",
    "author",
    "author_url",
    "url",
    # Library state
    "resolved_status",      # to-read | want-to-read | reading | completed
    "progress_percentage",
    "current_chapter",
    "origins",              # JSON list of contributing import channels
    "added_at",
    "visited_at",
    "bookmarked_at",
    "marked_at",
    "visit_count",
    # Work metadata
    "fandoms",
    "relationships",
    "characters",
    "tags",
    "rating",
    "warnings",
    "categories",
    "language",
    "word_count",
    "chapters_current",
    "chapters_total",       # empty when the work is open-ended
    "kudos",
    "hits",
    "bookmark_count",
    "comment_count",
    "summary",
    "published_at",
    "updated_at",
    "last_written_at",
]

_LIST_COLUMNS = ("fandoms", "relationships", "characters", "tags", "warnings", "categories")
_DATE_COLUMNS = ("added_at", "visited_at", "bookmarked_at", "marked_at", "published_at", "updated_at")


class CsvStore:
    """Upsert entries into one CSV file keyed by ``(owner, external_id)``.

    Every upsert rewrites the file through a temporary sibling, so a crash
    mid-write never leaves a truncated library behind. Collisions are
    last-write-wins.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or CSV_OUTPUT_PATH)
        self._lock = threading.Lock()

    def upsert(self, entries: Sequence[ReconciledLibraryEntry], owner: str | None = None) -> None:
        invalid = [e for e in entries if not e.external_id or not e.title]
        if invalid:
            raise BatchRejectedError(
                f"{len(invalid)} entries violate the non-empty external_id/title constraint"
            )

        owner_key = owner or ""
        with self._lock:
            try:
                rows = self._read_rows()
                for entry in entries:
                    rows[(owner_key, entry.external_id)] = _entry_to_row(entry, owner_key)
                self._write_rows(rows)
            except OSError as exc:
                raise StoreUnavailableError(f"CSV store at {self.path} is not writable: {exc}") from exc

        LOGGER.info("Wrote %s CSV rows for owner=%s to %s", len(entries), owner_key or "-", self.path)

    def _read_rows(self) -> dict[tuple[str, str], dict[str, Any]]:
        if not self.path.exists():
            return {}
        with self.path.open(newline="", encoding="utf-8") as fh:
            reader = csv.DictReader(fh)
            return {(row.get("owner", ""), row.get("external_id", "")): row for row in reader}

    def _write_rows(self, rows: dict[tuple[str, str], dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=CSV_COLUMNS, extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows.values())
        tmp_path.replace(self.path)


def _entry_to_row(entry: ReconciledLibraryEntry, owner: str) -> dict[str, Any]:
    row: dict[str, Any] = {
        "owner": owner,
        "external_id": entry.external_id,
        "title": entry.title,
        "author": entry.author,
        "author_url": entry.author_url,
        "url": entry.url,
        "resolved_status": entry.resolved_status.value,
        "progress_percentage": entry.progress_percentage,
        "current_chapter": entry.current_chapter,
        "origins": json.dumps(sorted(origin.value for origin in entry.origins)),
        "visit_count": entry.visit_count,
        "rating": entry.rating,
        "language": entry.language,
        "word_count": entry.word_count,
        "chapters_current": entry.chapters_current,
        "chapters_total": "" if entry.chapters_total is None else entry.chapters_total,
        "kudos": entry.kudos,
        "hits": entry.hits,
        "bookmark_count": entry.bookmark_count,
        "comment_count": entry.comment_count,
        "summary": _as_text(entry.summary, max_len=2000),
        "last_written_at": datetime.now(UTC).isoformat(),
    }
    for name in _LIST_COLUMNS:
        row[name] = json.dumps(list(getattr(entry, name)))
    for name in _DATE_COLUMNS:
        value = getattr(entry, name)
        row[name] = value.isoformat() if value is not None else ""
    return row


def _as_text(value: Any, max_len: int = 500) -> str:
    """Convert value to a stripped string, truncated to max_len chars."""
    s = value.strip() if isinstance(value, str) else ""
    if len(s) > max_len:
        return s[: max_len - 1] + "…"
    return s
