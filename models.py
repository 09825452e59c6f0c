"""Shared typed models for the library import pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Origin(str, Enum):
    """Ingestion channel that produced a WorkRecord."""

    LIVE_SCRAPE = "live_scrape"
    BOOKMARKS_EXPORT = "bookmarks_export"
    HISTORY_EXPORT = "history_export"
    MARKED_FOR_LATER_EXPORT = "marked_for_later_export"


class ReadingStatus(str, Enum):
    TO_READ = "to-read"
    WANT_TO_READ = "want-to-read"
    READING = "reading"
    COMPLETED = "completed"

    @property
    def priority(self) -> int:
        return STATUS_PRIORITY[self]


STATUS_PRIORITY: dict[ReadingStatus, int] = {
    ReadingStatus.TO_READ: 0,
    ReadingStatus.WANT_TO_READ: 1,
    ReadingStatus.READING: 2,
    ReadingStatus.COMPLETED: 3,
}


@dataclass(frozen=True, slots=True)
class WorkRecord:
    """One observation of an archive work from one source.

    List-valued fields are tuples and numeric fields are ints so that a
    record never carries None where a collection or count is expected.
    ``chapters_total`` is the only nullable count: None means open-ended.
    """

    external_id: str
    title: str
    author: str
    origin: Origin
    observed_status: ReadingStatus
    author_url: str = ""
    fandoms: tuple[str, ...] = ()
    relationships: tuple[str, ...] = ()
    characters: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    rating: str = ""
    warnings: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    language: str = ""
    word_count: int = 0
    chapters_current: int = 0
    chapters_total: int | None = None
    kudos: int = 0
    hits: int = 0
    bookmark_count: int = 0
    comment_count: int = 0
    summary: str = ""
    url: str = ""
    published_at: datetime | None = None
    updated_at: datetime | None = None
    visited_at: datetime | None = None
    bookmarked_at: datetime | None = None
    marked_at: datetime | None = None
    visit_count: int = 0

    @property
    def status(self) -> ReadingStatus:
        return self.observed_status

    @property
    def origins(self) -> frozenset[Origin]:
        return frozenset({self.origin})

    @property
    def added_at(self) -> datetime | None:
        """Earliest moment this source says the work entered the library."""
        stamps = [s for s in (self.bookmarked_at, self.marked_at, self.visited_at) if s is not None]
        return min(stamps) if stamps else None


@dataclass(frozen=True, slots=True)
class ReconciledLibraryEntry:
    """One work's resolved library state after reconciliation."""

    external_id: str
    title: str
    author: str
    resolved_status: ReadingStatus
    progress_percentage: int
    current_chapter: int
    origins: frozenset[Origin]
    author_url: str = ""
    fandoms: tuple[str, ...] = ()
    relationships: tuple[str, ...] = ()
    characters: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    rating: str = ""
    warnings: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    language: str = ""
    word_count: int = 0
    chapters_current: int = 0
    chapters_total: int | None = None
    kudos: int = 0
    hits: int = 0
    bookmark_count: int = 0
    comment_count: int = 0
    summary: str = ""
    url: str = ""
    published_at: datetime | None = None
    updated_at: datetime | None = None
    visited_at: datetime | None = None
    bookmarked_at: datetime | None = None
    marked_at: datetime | None = None
    visit_count: int = 0
    added_at: datetime | None = None

    @property
    def status(self) -> ReadingStatus:
        return self.resolved_status


@dataclass(slots=True)
class AuthSession:
    """A live, short-lived credential to the archive.

    Owned by whoever opened it for the duration of one scrape and never
    written to any store.
    """

    identity: str
    token_or_cookie: str
    valid: bool = True
    strategy: str = ""
    cookies: dict[str, str] = field(default_factory=dict, repr=False)

    def invalidate(self) -> None:
        self.valid = False
        self.cookies.clear()


class ScrapeKind(str, Enum):
    """Where the records of a live scrape actually came from."""

    AUTHENTICATED = "authenticated"
    PUBLIC_FALLBACK = "public_fallback"
    SAMPLE = "sample"
    NO_DATA = "no_data"


@dataclass(frozen=True, slots=True)
class ScrapeResult:
    kind: ScrapeKind
    records: tuple[WorkRecord, ...] = ()
    reason: str = ""


@dataclass(slots=True)
class LoadReport:
    attempted_batches: int = 0
    accepted_count: int = 0
    rejected_batches: int = 0
    rejected_count: int = 0
    cancelled: bool = False


@dataclass(slots=True)
class ImportReport:
    """Caller-facing summary of one import run."""

    source_counts: dict[str, int] = field(default_factory=dict)
    source_errors: dict[str, str] = field(default_factory=dict)
    scrape_kind: ScrapeKind | None = None
    unique_works: int = 0
    persisted_count: int = 0
    rejected_batches: int = 0
    success: bool = False
    reason: str = ""
