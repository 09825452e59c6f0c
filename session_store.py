"""Owned holder for live archive sessions and per-identity import locks."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Iterator

from models import AuthSession

SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "900"))

LOGGER = logging.getLogger(__name__)


class SessionStore:
    """Track sessions that are in use by a running scrape.

    A session is only held here while its scrape runs; ``sweep`` drops and
    invalidates anything older than the TTL in case a caller never released
    it. ``exclusive`` serializes imports for the same identity, since one
    archive session must not drive two scrapes at once.

    Create one store per process and pass it to every import that should be
    serialized against the others.
    """

    def __init__(
        self,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._guard = threading.Lock()
        self._sessions: dict[str, tuple[AuthSession, float]] = {}
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def exclusive(self, identity: str) -> Iterator[None]:
        """Block until no other import for ``identity`` is running."""
        key = identity.lower()
        with self._guard:
            lock = self._locks[key]
        if not lock.acquire(blocking=False):
            LOGGER.info("Sessions: waiting for running import of identity=%s", identity)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def put(self, session: AuthSession) -> None:
        with self._guard:
            self._sessions[session.identity.lower()] = (session, self._clock())

    def discard(self, identity: str) -> None:
        with self._guard:
            held = self._sessions.pop(identity.lower(), None)
        if held is not None:
            held[0].invalidate()

    def sweep(self) -> int:
        """Invalidate and drop expired or already-invalid sessions; return how many were removed."""
        with self._guard:
            expired = [
                key
                for key, (session, created) in self._sessions.items()
                if self._expired(created) or not session.valid
            ]
            removed = [self._sessions.pop(key)[0] for key in expired]
        for session in removed:
            session.invalidate()
        if removed:
            LOGGER.info("Sessions: swept %s stale session(s)", len(removed))
        return len(removed)

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)

    def _expired(self, created: float) -> bool:
        return self._clock() - created >= self.ttl_seconds
