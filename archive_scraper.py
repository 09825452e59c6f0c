"""Live scraping of a user's archive listings with a tagged fallback chain."""

from __future__ import annotations

import logging
import os
import time
from datetime import UTC, datetime
from typing import Iterator
from urllib.parse import urlparse

import requests

from archive_auth import USER_AGENT, AuthSessionManager, open_session
from errors import AuthError
from models import Origin, ReadingStatus, ScrapeKind, ScrapeResult, WorkRecord
from session_store import SessionStore
from work_extractor import extract, work_url

ARCHIVE_BASE_URL = os.getenv("ARCHIVE_BASE_URL", "https://archiveofourown.org").rstrip("/")
ARCHIVE_MAX_PAGES = int(os.getenv("ARCHIVE_MAX_PAGES", "5"))
SAMPLE_FALLBACK_ENABLED = os.getenv("ARCHIVE_SAMPLE_FALLBACK", "0") == "1"
REQUEST_TIMEOUT_SECONDS = int(os.getenv("ARCHIVE_REQUEST_TIMEOUT_SECONDS", "30"))
PUBLIC_FALLBACK_LIMIT = 5
MAX_RETRIES = 3
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

LOGGER = logging.getLogger(__name__)

# (listing name, path template, query params, status given to every work on it)
PRIVATE_LISTINGS: tuple[tuple[str, str, dict[str, str], ReadingStatus], ...] = (
    ("readings", "/users/{identity}/readings", {}, ReadingStatus.COMPLETED),
    ("bookmarks", "/users/{identity}/bookmarks", {}, ReadingStatus.WANT_TO_READ),
    ("marked_for_later", "/users/{identity}/readings", {"show": "to-read"}, ReadingStatus.TO_READ),
)


class PrivatePageError(RuntimeError):
    """The archive redirected a listing request to the login page."""


class ArchiveClient:
    """Fetch archive pages over one requests.Session."""

    def __init__(self, http: requests.Session, base_url: str = ARCHIVE_BASE_URL) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    def fetch_page(self, path: str, params: dict[str, str] | None = None) -> str:
        """GET one page with backoff on rate limits; raise PrivatePageError on a login redirect."""
        url = f"{self.base_url}{path}"
        delay_seconds = 2.0
        last_error: Exception | None = None

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self.http.get(url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
                if response.status_code in _RETRYABLE_STATUS and attempt < MAX_RETRIES:
                    LOGGER.warning(
                        "Archive fetch: status=%s for %s, retrying in %.0fs",
                        response.status_code,
                        path,
                        delay_seconds,
                    )
                    time.sleep(delay_seconds)
                    delay_seconds *= 2
                    continue
                response.raise_for_status()
            except requests.HTTPError:
                raise
            except requests.RequestException as exc:
                last_error = exc
                if attempt >= MAX_RETRIES:
                    break
                time.sleep(delay_seconds)
                delay_seconds *= 2
                continue

            if "/login" in urlparse(response.url).path:
                raise PrivatePageError(f"{path} requires a logged-in session")
            return response.text

        raise requests.ConnectionError(f"Archive fetch failed after retries for {path}: {last_error}")

    def iter_listing(
        self,
        path: str,
        params: dict[str, str],
        status: ReadingStatus,
        max_pages: int = ARCHIVE_MAX_PAGES,
    ) -> Iterator[WorkRecord]:
        for page in range(1, max_pages + 1):
            html = self.fetch_page(path, {**params, "page": str(page)})
            records = list(extract(Origin.LIVE_SCRAPE, html, status=status))
            LOGGER.info("Archive listing: path=%s page=%s works=%s", path, page, len(records))
            yield from records
            if not records or not _has_next_page(html):
                return


def scrape_library(
    identity: str,
    secret: str,
    *,
    manager: AuthSessionManager | None = None,
    sessions: SessionStore | None = None,
    sample_fallback: bool = SAMPLE_FALLBACK_ENABLED,
    base_url: str = ARCHIVE_BASE_URL,
) -> ScrapeResult:
    """Scrape the identity's private listings, tagging where data came from.

    After an authentication failure, or when no private listing yields any
    work, the public works listing is tried, then (only when enabled) the
    built-in sample dataset. The result kind always says which one the
    records came from so callers can tell real data from stand-ins.
    """
    with requests.Session() as http:
        http.headers.update({"User-Agent": USER_AGENT})
        client = ArchiveClient(http, base_url)

        try:
            with open_session(identity, secret, manager) as session:
                if sessions is not None:
                    sessions.put(session)
                try:
                    http.cookies.update(session.cookies)
                    records = _collect_private(client, identity)
                finally:
                    if sessions is not None:
                        sessions.discard(identity)
                    http.cookies.clear()
        except AuthError as exc:
            reason = f"authentication failed: {type(exc).__name__}: {exc}"
            LOGGER.warning("Scrape: %s", reason)
        else:
            if records:
                LOGGER.info("Scrape: identity=%s authenticated works=%s", identity, len(records))
                return ScrapeResult(kind=ScrapeKind.AUTHENTICATED, records=tuple(records))
            reason = "no private listing returned any works"
            LOGGER.warning("Scrape: identity=%s %s", identity, reason)

        public = _collect_public(client)
        if public:
            return ScrapeResult(kind=ScrapeKind.PUBLIC_FALLBACK, records=tuple(public), reason=reason)

    if sample_fallback:
        LOGGER.warning("Scrape: falling back to the built-in sample dataset")
        return ScrapeResult(kind=ScrapeKind.SAMPLE, records=sample_works(), reason=reason)
    return ScrapeResult(kind=ScrapeKind.NO_DATA, reason=reason)


def _collect_private(client: ArchiveClient, identity: str) -> list[WorkRecord]:
    records: list[WorkRecord] = []
    for name, template, params, status in PRIVATE_LISTINGS:
        path = template.format(identity=identity)
        found: list[WorkRecord] = []
        try:
            for record in client.iter_listing(path, params, status):
                found.append(record)
        except PrivatePageError as exc:
            LOGGER.warning("Scrape: listing=%s stopped at a private page after %s works: %s", name, len(found), exc)
        except requests.RequestException as exc:
            LOGGER.warning("Scrape: listing=%s failed after %s works: %s", name, len(found), exc)
        else:
            LOGGER.info("Scrape: listing=%s works=%s", name, len(found))
        records.extend(found)
    return records


def _collect_public(client: ArchiveClient) -> list[WorkRecord]:
    try:
        html = client.fetch_page("/works")
    except (PrivatePageError, requests.RequestException) as exc:
        LOGGER.warning("Scrape: public works listing unavailable: %s", exc)
        return []
    records = list(extract(Origin.LIVE_SCRAPE, html))[:PUBLIC_FALLBACK_LIMIT]
    LOGGER.info("Scrape: public fallback works=%s", len(records))
    return records


def _has_next_page(html: str) -> bool:
    # The last page still renders li.next, but without a rel="next" link.
    return 'rel="next"' in html


def sample_works() -> tuple[WorkRecord, ...]:
    """Small fixed dataset for demos when the archive cannot be reached."""
    now = datetime.now(UTC)
    return (
        WorkRecord(
            external_id="12345",
            title="Sample Work 1",
            author="Sample Author",
            origin=Origin.LIVE_SCRAPE,
            observed_status=ReadingStatus.COMPLETED,
            fandoms=("Sample Fandom",),
            relationships=("Sample Relationship",),
            characters=("Sample Character",),
            tags=("sample", "tag"),
            rating="Teen And Up Audiences",
            warnings=("No Archive Warnings Apply",),
            categories=("F/M",),
            language="English",
            word_count=1000,
            chapters_current=1,
            chapters_total=1,
            kudos=10,
            hits=100,
            bookmark_count=5,
            comment_count=2,
            summary="A sample work for testing",
            url=work_url("12345"),
            published_at=now,
            updated_at=now,
        ),
        WorkRecord(
            external_id="67890",
            title="Sample Work 2",
            author="Another Author",
            origin=Origin.LIVE_SCRAPE,
            observed_status=ReadingStatus.READING,
            fandoms=("Another Fandom",),
            relationships=("Another Relationship",),
            characters=("Another Character",),
            tags=("another", "tag"),
            rating="General Audiences",
            warnings=("No Archive Warnings Apply",),
            categories=("Gen",),
            language="English",
            word_count=5000,
            chapters_current=3,
            chapters_total=5,
            kudos=25,
            hits=250,
            bookmark_count=12,
            comment_count=5,
            summary="Another sample work for testing",
            url=work_url("67890"),
            published_at=now,
            updated_at=now,
        ),
    )
