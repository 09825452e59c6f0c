"""Supabase (PostgREST) Store for reconciled library entries."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Sequence

import requests

from errors import BatchRejectedError, StoreUnavailableError
from models import ReconciledLibraryEntry

SUPABASE_LIBRARY_TABLE = os.getenv("SUPABASE_LIBRARY_TABLE", "library_entries")
REQUEST_TIMEOUT_SECONDS = 30
MAX_RETRIES = 3
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
_AUTH_FAILURE_STATUS = frozenset({401, 403})

LOGGER = logging.getLogger(__name__)


class SupabaseStore:
    """Upsert entries through the PostgREST bulk endpoint.

    One batch is one request, so the database applies it in a single
    statement: a constraint violation rejects the whole batch.
    """

    def __init__(
        self,
        url: str | None = None,
        service_key: str | None = None,
        table: str = SUPABASE_LIBRARY_TABLE,
        session: requests.Session | None = None,
    ) -> None:
        self.url = (url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.service_key = service_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or ""
        if not self.url:
            raise RuntimeError("SUPABASE_URL environment variable is required")
        if not self.service_key:
            raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")
        self.table = table
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def upsert(self, entries: Sequence[ReconciledLibraryEntry], owner: str | None = None) -> None:
        if not entries:
            return
        payload = [_entry_to_row(entry, owner) for entry in entries]
        self._request_with_backoff(
            url=f"{self.url}/rest/v1/{self.table}",
            params={"on_conflict": "owner,external_id"},
            json_payload=payload,
        )
        LOGGER.info("Upserted %s rows into %s for owner=%s", len(entries), self.table, owner or "-")

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
            "Prefer": "resolution=merge-duplicates,return=minimal",
        }

    def _request_with_backoff(
        self,
        *,
        url: str,
        params: dict[str, str],
        json_payload: list[dict[str, Any]],
    ) -> requests.Response:
        """POST with exponential backoff on rate limits and server errors."""
        delay_seconds = 1.0
        last_error: str = ""

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._session.post(
                    url,
                    params=params,
                    headers=self._headers(),
                    json=json_payload,
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = str(exc)
                LOGGER.warning("Supabase request failed on attempt %s/%s: %s", attempt, MAX_RETRIES, exc)
            else:
                if response.ok:
                    return response
                if response.status_code in _AUTH_FAILURE_STATUS:
                    # A bad or revoked service key fails every batch the same way.
                    raise StoreUnavailableError(
                        f"Supabase refused the service key with status={response.status_code}: {_error_text(response)}"
                    )
                if response.status_code not in _RETRYABLE_STATUS:
                    raise BatchRejectedError(
                        f"Supabase rejected batch with status={response.status_code}: {_error_text(response)}"
                    )
                last_error = f"status={response.status_code} {_error_text(response)}"
                LOGGER.warning(
                    "Supabase returned %s on attempt %s/%s", response.status_code, attempt, MAX_RETRIES
                )

            if attempt < MAX_RETRIES:
                time.sleep(delay_seconds)
                delay_seconds *= 2

        raise StoreUnavailableError(f"Supabase request failed after retries: {last_error}")


def _entry_to_row(entry: ReconciledLibraryEntry, owner: str | None) -> dict[str, Any]:
    return {
        "owner": owner or "",
        "external_id": entry.external_id,
        "title": entry.title,
        "author": entry.author,
        "author_url": entry.author_url or None,
        "url": entry.url,
        "reading_status": entry.resolved_status.value,
        "progress_percentage": entry.progress_percentage,
        "current_chapter": entry.current_chapter,
        "origins": sorted(origin.value for origin in entry.origins),
        "fandoms": list(entry.fandoms),
        "relationships": list(entry.relationships),
        "characters": list(entry.characters),
        "additional_tags": list(entry.tags),
        "rating": entry.rating,
        "warnings": list(entry.warnings),
        "categories": list(entry.categories),
        "language": entry.language or None,
        "word_count": entry.word_count,
        "chapters_published": entry.chapters_current,
        "chapters_total": entry.chapters_total,
        "kudos": entry.kudos,
        "hits": entry.hits,
        "bookmarks": entry.bookmark_count,
        "comments": entry.comment_count,
        "summary": entry.summary,
        "visit_count": entry.visit_count,
        "published_date": _iso(entry.published_at),
        "updated_date": _iso(entry.updated_at),
        "date_added": _iso(entry.added_at),
        "last_visited": _iso(entry.visited_at),
    }


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _error_text(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("details") or body)
    return str(body)[:500]
