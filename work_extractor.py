"""Normalize archive pages and exporter files into WorkRecords.

Four payload shapes are accepted:

- ``live_scrape``: an HTML listing page fetched from the archive, one
  ``.blurb`` block per work.
- ``bookmarks_export``: a saved bookmarks page. Exporter markup nests
  inconsistently, so each work is found by its heading link and the
  enclosing container is resolved heuristically.
- ``history_export`` / ``marked_for_later_export``: JSON from the browser
  extension. Field shapes differ between extension versions and are coerced
  defensively.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import UTC, datetime
from json import JSONDecodeError
from typing import Any, Iterator
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from errors import ParseError
from models import Origin, ReadingStatus, WorkRecord

ARCHIVE_BASE_URL = os.getenv("ARCHIVE_BASE_URL", "https://archiveofourown.org").rstrip("/")

LOGGER = logging.getLogger(__name__)

DEFAULT_STATUS: dict[Origin, ReadingStatus] = {
    Origin.LIVE_SCRAPE: ReadingStatus.TO_READ,
    Origin.BOOKMARKS_EXPORT: ReadingStatus.WANT_TO_READ,
    Origin.HISTORY_EXPORT: ReadingStatus.COMPLETED,
    Origin.MARKED_FOR_LATER_EXPORT: ReadingStatus.TO_READ,
}

# Named list fields an exporter object may wrap its entries in, in lookup order.
_JSON_LIST_FIELDS: dict[Origin, tuple[str, ...]] = {
    Origin.HISTORY_EXPORT: ("history", "works"),
    Origin.MARKED_FOR_LATER_EXPORT: ("marked_for_later", "works"),
}

_BLURB_SELECTOR = ".work.blurb, .bookmark.blurb, .reading.blurb"
_WORK_LINK_SELECTOR = 'h4.heading a[href*="/works/"]'
_AUTHOR_SELECTOR = 'a[rel="author"], .authors a'

_WORK_ID_RE = re.compile(r"/works/(\d+)")
_NUMBER = r"(\d+(?:,\d+)*)"
_LEADING_INT_RE = re.compile(r"\s*(-?)(\d{1,3}(?:[,\s]\d{3})+|\d+)(?!\d)")
_CHAPTERS_RE = re.compile(r"(\d+(?:,\d+)*)\s*/\s*(\d+(?:,\d+)*|\?)")
_LABELED_CHAPTERS_RE = re.compile(r"chapters\s*:?\s*(\d+(?:,\d+)*\s*/\s*(?:\d+(?:,\d+)*|\?))", re.IGNORECASE)
_LAST_VISITED_RE = re.compile(r"last visited:\s*(\d{1,2}\s+\w{3}\s+\d{4})", re.IGNORECASE)
_VISIT_COUNT_RE = re.compile(r"visited\s+(\d+(?:,\d+)*)\s+times", re.IGNORECASE)
_VISITED_ONCE_RE = re.compile(r"visited\s+once", re.IGNORECASE)
_DATE_FORMATS = ("%d %b %Y", "%Y-%m-%d", "%d %B %Y", "%b %d, %Y")


def extract(
    source_kind: Origin | str,
    payload: str | bytes | Any,
    status: ReadingStatus | None = None,
) -> Iterator[WorkRecord]:
    """Return a lazy, single-pass iterator of WorkRecords for one payload.

    JSON payloads are decoded before this function returns, so malformed
    files raise ParseError at the call site rather than mid-iteration.
    HTML with no matching work blocks yields nothing.

    Args:
        source_kind: Origin of the payload.
        payload: Raw HTML/JSON text (or already-decoded JSON).
        status: Optional override of the origin's default observed status.
    """
    origin = Origin(source_kind)
    observed = status or DEFAULT_STATUS[origin]

    if origin is Origin.LIVE_SCRAPE:
        return _iter_live_blurbs(_as_markup(payload), observed)
    if origin is Origin.BOOKMARKS_EXPORT:
        return _iter_bookmarks_export(_as_markup(payload), observed)

    entries = _load_json_entries(payload, origin)
    return _iter_json_entries(entries, origin, observed)


# ---------------------------------------------------------------------------
# Canonicalization helpers
# ---------------------------------------------------------------------------

def parse_chapters(value: Any) -> tuple[int, int | None]:
    """Parse ``"current/total"`` into two ints; a ``?`` total becomes None."""
    text = _as_text(value)
    match = _CHAPTERS_RE.search(text)
    if not match:
        return coerce_int(text), None
    current = coerce_int(match.group(1))
    total_raw = match.group(2)
    total = None if total_raw == "?" else coerce_int(total_raw)
    return current, total


def parse_labeled_count(text: str, label: str) -> int:
    """Extract the number attached to ``label`` in a free-text stats line.

    Accepts both ``"Kudos: 1,234"`` and ``"1,234 kudos"``. The colon form is
    tried first because in a run like ``"Comments: 5 Kudos: 10"`` the bare
    form would otherwise pick up the neighbouring number.
    """
    if not text:
        return 0
    escaped = re.escape(label)
    for pattern in (rf"\b{escaped}\s*:\s*{_NUMBER}", rf"{_NUMBER}\s*{escaped}\b"):
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return coerce_int(match.group(1))
    return 0


def coerce_int(value: Any) -> int:
    """Best-effort non-negative integer coercion; negatives and anything unparsable become 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0)
    if isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        if match and not match.group(1):
            return int(re.sub(r"[,\s]", "", match.group(2)))
    return 0


def parse_datetime(value: Any) -> datetime | None:
    """Parse the date shapes seen in archive pages and exporter files."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    text = _as_text(value)
    if not text:
        return None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def work_id_from(value: Any) -> str:
    """Normalize a work id or work URL to the bare numeric id."""
    text = _as_text(value)
    match = _WORK_ID_RE.search(text)
    return match.group(1) if match else text


def work_url(external_id: str) -> str:
    return f"{ARCHIVE_BASE_URL}/works/{external_id}"


# ---------------------------------------------------------------------------
# HTML origins
# ---------------------------------------------------------------------------

def _iter_live_blurbs(markup: str, status: ReadingStatus) -> Iterator[WorkRecord]:
    soup = BeautifulSoup(markup, "html.parser")
    produced = 0
    discarded = 0
    for block in soup.select(_BLURB_SELECTOR):
        link = block.select_one(_WORK_LINK_SELECTOR)
        fields = _fields_from_container(block, link) if link is not None else None
        if not fields or not fields["external_id"]:
            discarded += 1
            continue

        fields["title"] = fields["title"] or "Untitled"
        fields["author"] = fields["author"] or "Anonymous"
        fields.update(_visit_fields(block))
        produced += 1
        yield WorkRecord(origin=Origin.LIVE_SCRAPE, observed_status=status, **fields)

    LOGGER.info("Extractor: origin=live_scrape produced=%s discarded=%s", produced, discarded)


def _iter_bookmarks_export(markup: str, status: ReadingStatus) -> Iterator[WorkRecord]:
    soup = BeautifulSoup(markup, "html.parser")
    produced = 0
    discarded = 0
    for link in soup.select(_WORK_LINK_SELECTOR):
        container = _bookmark_container(link)
        if container is None:
            discarded += 1
            continue

        fields = _fields_from_container(container, link)
        # Heading links without a title or byline are navigation noise, not works.
        if not fields["external_id"] or not fields["title"] or not fields["author"]:
            discarded += 1
            continue

        fields["bookmarked_at"] = parse_datetime(
            _text(container, ".user .datetime") or _text(container, ".datetime")
        )
        produced += 1
        yield WorkRecord(origin=Origin.BOOKMARKS_EXPORT, observed_status=status, **fields)

    LOGGER.info("Extractor: origin=bookmarks_export produced=%s discarded=%s", produced, discarded)


def _bookmark_container(link: Tag) -> Tag | None:
    header = link.find_parent(class_="header")
    if header is not None and header.parent is not None:
        return header.parent
    parent = link.parent
    return parent.parent if parent is not None else None


def _fields_from_container(container: Tag, link: Tag) -> dict[str, Any]:
    external_id = work_id_from(link.get("href", ""))
    author_el = container.select_one(_AUTHOR_SELECTOR)
    stats_el = container.select_one(".stats")
    stats_text = stats_el.get_text(" ", strip=True) if stats_el is not None else ""
    chapters_current, chapters_total = _chapters(container, stats_text)

    return {
        "external_id": external_id,
        "title": link.get_text(" ", strip=True),
        "author": author_el.get_text(" ", strip=True) if author_el is not None else "",
        "author_url": _absolute(author_el.get("href", "")) if author_el is not None else "",
        "fandoms": _texts(container, ".fandoms a"),
        "relationships": _texts(container, "li.relationships a"),
        "characters": _texts(container, "li.characters a"),
        "tags": _texts(container, "li.freeforms a"),
        "rating": _text(container, ".required-tags .rating .text") or _text(container, ".rating .text"),
        "warnings": _texts(container, "li.warnings a") or _texts(container, ".warnings .text"),
        "categories": _texts(container, ".category .text"),
        "language": _text(container, "dd.language"),
        "word_count": _stat(container, "words", stats_text),
        "chapters_current": chapters_current,
        "chapters_total": chapters_total,
        "kudos": _stat(container, "kudos", stats_text),
        "hits": _stat(container, "hits", stats_text),
        "bookmark_count": _stat(container, "bookmarks", stats_text),
        "comment_count": _stat(container, "comments", stats_text),
        "summary": _text(container, "blockquote.summary") or _text(container, ".summary"),
        "url": work_url(external_id) if external_id else "",
        "updated_at": parse_datetime(_text(container, ".header .datetime") or _text(container, ".datetime")),
    }


def _visit_fields(block: Tag) -> dict[str, Any]:
    """Readings pages carry a 'Last visited … Visited N times' line."""
    viewed = _text(block, "h4.viewed")
    if not viewed:
        return {}
    visited = _LAST_VISITED_RE.search(viewed)
    count = _VISIT_COUNT_RE.search(viewed)
    if count:
        visit_count = coerce_int(count.group(1))
    else:
        visit_count = 1 if _VISITED_ONCE_RE.search(viewed) or visited else 0
    return {
        "visited_at": parse_datetime(visited.group(1)) if visited else None,
        "visit_count": visit_count,
    }


def _chapters(container: Tag, stats_text: str) -> tuple[int, int | None]:
    dd = container.select_one("dd.chapters")
    if dd is not None:
        return parse_chapters(dd.get_text(strip=True))
    match = _LABELED_CHAPTERS_RE.search(stats_text)
    return parse_chapters(match.group(1)) if match else (0, None)


def _stat(container: Tag, name: str, stats_text: str) -> int:
    dd = container.select_one(f"dd.{name}")
    if dd is not None:
        return coerce_int(dd.get_text(strip=True))
    return parse_labeled_count(stats_text, name)


def _texts(container: Tag, selector: str) -> tuple[str, ...]:
    values = (el.get_text(" ", strip=True) for el in container.select(selector))
    return tuple(dict.fromkeys(v for v in values if v))


def _text(container: Tag, selector: str) -> str:
    el = container.select_one(selector)
    return el.get_text(" ", strip=True) if el is not None else ""


def _absolute(href: str) -> str:
    return urljoin(f"{ARCHIVE_BASE_URL}/", href) if href else ""


def _as_markup(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="replace")
    return payload if isinstance(payload, str) else ""


# ---------------------------------------------------------------------------
# JSON origins
# ---------------------------------------------------------------------------

def _load_json_entries(payload: Any, origin: Origin) -> list[Any]:
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            data = json.loads(payload)
        except (JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParseError(f"Invalid JSON in {origin.value} payload: {exc}") from exc
    else:
        data = payload

    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in _JSON_LIST_FIELDS[origin]:
            if isinstance(data.get(key), list):
                return data[key]
    raise ParseError(
        f"Unexpected {origin.value} payload shape: expected a list or an object with "
        f"one of {list(_JSON_LIST_FIELDS[origin])}"
    )


def _iter_json_entries(entries: list[Any], origin: Origin, status: ReadingStatus) -> Iterator[WorkRecord]:
    produced = 0
    discarded = 0
    for entry in entries:
        record = _record_from_entry(entry, origin, status) if isinstance(entry, dict) else None
        if record is None:
            discarded += 1
            continue
        produced += 1
        yield record

    LOGGER.info("Extractor: origin=%s produced=%s discarded=%s", origin.value, produced, discarded)


def _record_from_entry(entry: dict[str, Any], origin: Origin, status: ReadingStatus) -> WorkRecord | None:
    external_id = work_id_from(_first(entry, "id", "work_id"))
    if not external_id:
        return None

    chapters_current, chapters_total = parse_chapters(_first(entry, "chapters", "completion"))
    extra: dict[str, Any] = {}
    if origin is Origin.HISTORY_EXPORT:
        extra["visited_at"] = parse_datetime(_first(entry, "date_visited", "visited", "last_read", "last_visited"))
        extra["visit_count"] = coerce_int(_first(entry, "visit_count", "visits")) or 1
    else:
        extra["marked_at"] = parse_datetime(_first(entry, "date_marked", "marked"))

    return WorkRecord(
        external_id=external_id,
        title=_as_text(entry.get("title")) or "Untitled",
        author=_as_text(entry.get("author")) or ", ".join(_as_str_list(entry.get("authors"))) or "Anonymous",
        origin=origin,
        observed_status=status,
        author_url=_absolute(_as_text(_first(entry, "author_url", "authorUrl"))),
        fandoms=_as_str_list(_first(entry, "fandoms", "fandom")),
        relationships=_as_str_list(_first(entry, "relationships", "pairings")),
        characters=_as_str_list(entry.get("characters")),
        tags=_as_str_list(_first(entry, "additional_tags", "tags", "freeforms")),
        rating=next(iter(_as_str_list(entry.get("rating"))), ""),
        warnings=_as_str_list(_first(entry, "warnings", "warning")),
        categories=_as_str_list(_first(entry, "categories", "category")),
        language=_as_text(entry.get("language")),
        word_count=coerce_int(_first(entry, "words", "word_count")),
        chapters_current=chapters_current,
        chapters_total=chapters_total,
        kudos=coerce_int(entry.get("kudos")),
        hits=coerce_int(entry.get("hits")),
        bookmark_count=coerce_int(_first(entry, "bookmarks", "bookmark_count")),
        comment_count=coerce_int(_first(entry, "comments", "comment_count")),
        summary=_as_text(entry.get("summary")),
        url=_as_text(entry.get("url")) or work_url(external_id),
        published_at=parse_datetime(_first(entry, "published", "date_published", "published_at")),
        updated_at=parse_datetime(_first(entry, "updated", "date_updated", "updated_at")),
        **extra,
    )


def _first(entry: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def _as_str_list(value: Any) -> tuple[str, ...]:
    """Flatten strings, string lists, ``{"name": …}`` objects and
    object-of-lists into a de-duplicated tuple of names."""
    names: list[str] = []
    _collect_names(value, names)
    return tuple(dict.fromkeys(names))


def _collect_names(value: Any, out: list[str]) -> None:
    if isinstance(value, str):
        if value.strip():
            out.append(value.strip())
    elif isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str):
            _collect_names(name, out)
        else:
            for nested in value.values():
                _collect_names(nested, out)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_names(item, out)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return ""
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return ""
