from __future__ import annotations

from unittest.mock import patch

import pytest
import requests
import responses
from responses import matchers

import archive_scraper
from archive_auth import AuthSessionManager
from errors import InvalidCredentialsError
from models import AuthSession, ReadingStatus, ScrapeKind
from session_store import SessionStore

BASE_URL = "https://archive.test"
READINGS_URL = f"{BASE_URL}/users/reader/readings"
BOOKMARKS_URL = f"{BASE_URL}/users/reader/bookmarks"


def _blurb(work_id: str) -> str:
    return f"""
    <li class="work blurb group" id="work_{work_id}">
      <div class="header module">
        <h4 class="heading">
          <a href="/works/{work_id}">Work {work_id}</a> by
          <a rel="author" href="/users/writer/pseuds/writer">writer</a>
        </h4>
      </div>
      <dl class="stats"><dt>Chapters:</dt><dd class="chapters">1/1</dd></dl>
    </li>
    """


def _listing(*work_ids: str, next_page: bool = False) -> str:
    pager = '<ol class="pagination"><li class="next"><a rel="next" href="?page=2">Next</a></li></ol>'
    last = '<ol class="pagination"><li class="next"><span class="disabled">Next</span></li></ol>'
    blurbs = "".join(_blurb(work_id) for work_id in work_ids)
    return f'<html><body><ol class="index group">{blurbs}</ol>{pager if next_page else last}</body></html>'


class StaticStrategy:
    name = "static"

    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.sessions: list[AuthSession] = []

    def login(self, identity: str, secret: str) -> AuthSession:
        if isinstance(self.outcome, Exception):
            raise self.outcome
        session = AuthSession(
            identity=identity,
            token_or_cookie="abc",
            strategy=self.name,
            cookies={"_otwarchive_session": "abc"},
        )
        self.sessions.append(session)
        return session


def _page(number: int, **extra: str):
    return [matchers.query_param_matcher({**extra, "page": str(number)})]


def _mock_private_listings(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(responses.GET, READINGS_URL, body=_listing("111"), match=_page(1))
    responses_mock.add(responses.GET, BOOKMARKS_URL, body=_listing("222"), match=_page(1))
    responses_mock.add(responses.GET, READINGS_URL, body=_listing(), match=_page(1, show="to-read"))


def test_authenticated_scrape_tags_statuses_per_listing(responses_mock: responses.RequestsMock) -> None:
    _mock_private_listings(responses_mock)
    strategy = StaticStrategy(None)
    sessions = SessionStore()

    result = archive_scraper.scrape_library(
        "reader",
        "pw",
        manager=AuthSessionManager([strategy]),
        sessions=sessions,
        base_url=BASE_URL,
    )

    assert result.kind is ScrapeKind.AUTHENTICATED
    statuses = {r.external_id: r.observed_status for r in result.records}
    assert statuses == {"111": ReadingStatus.COMPLETED, "222": ReadingStatus.WANT_TO_READ}
    assert "_otwarchive_session=abc" in responses_mock.calls[0].request.headers["Cookie"]
    assert len(sessions) == 0
    assert strategy.sessions[0].valid is False


def test_listing_follows_rel_next_pages(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(responses.GET, READINGS_URL, body=_listing("1", "2", next_page=True), match=_page(1))
    responses_mock.add(responses.GET, READINGS_URL, body=_listing("3"), match=_page(2))

    with requests.Session() as http:
        client = archive_scraper.ArchiveClient(http, BASE_URL)
        records = list(client.iter_listing("/users/reader/readings", {}, ReadingStatus.COMPLETED))

    assert [r.external_id for r in records] == ["1", "2", "3"]
    assert len(responses_mock.calls) == 2


def test_listing_stops_at_max_pages(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(responses.GET, READINGS_URL, body=_listing("1", next_page=True))

    with requests.Session() as http:
        client = archive_scraper.ArchiveClient(http, BASE_URL)
        records = list(client.iter_listing("/users/reader/readings", {}, ReadingStatus.COMPLETED, max_pages=2))

    assert len(records) == 2
    assert len(responses_mock.calls) == 2


def test_auth_failure_falls_back_to_public_listing(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(
        responses.GET, f"{BASE_URL}/works", body=_listing("1", "2", "3", "4", "5", "6", "7")
    )

    result = archive_scraper.scrape_library(
        "reader",
        "bad",
        manager=AuthSessionManager([StaticStrategy(InvalidCredentialsError("nope"))]),
        base_url=BASE_URL,
    )

    assert result.kind is ScrapeKind.PUBLIC_FALLBACK
    assert len(result.records) == archive_scraper.PUBLIC_FALLBACK_LIMIT
    assert "InvalidCredentialsError" in result.reason


@pytest.mark.parametrize(
    ("sample_fallback", "expected_kind", "expected_count"),
    [(False, ScrapeKind.NO_DATA, 0), (True, ScrapeKind.SAMPLE, 2)],
)
def test_nothing_reachable_is_tagged(
    responses_mock: responses.RequestsMock,
    sample_fallback: bool,
    expected_kind: ScrapeKind,
    expected_count: int,
) -> None:
    responses_mock.add(responses.GET, f"{BASE_URL}/works", body=_listing())

    result = archive_scraper.scrape_library(
        "reader",
        "bad",
        manager=AuthSessionManager([StaticStrategy(InvalidCredentialsError("nope"))]),
        sample_fallback=sample_fallback,
        base_url=BASE_URL,
    )

    assert result.kind is expected_kind
    assert len(result.records) == expected_count


def test_empty_private_listings_use_public_fallback(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(responses.GET, READINGS_URL, body=_listing())
    responses_mock.add(responses.GET, BOOKMARKS_URL, body=_listing())
    responses_mock.add(responses.GET, f"{BASE_URL}/works", body=_listing("9"))

    result = archive_scraper.scrape_library(
        "reader", "pw", manager=AuthSessionManager([StaticStrategy(None)]), base_url=BASE_URL
    )

    assert result.kind is ScrapeKind.PUBLIC_FALLBACK
    assert result.reason == "no private listing returned any works"


def test_login_redirect_raises_private_page_error(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(
        responses.GET, READINGS_URL, status=302, headers={"Location": f"{BASE_URL}/users/login"}
    )
    responses_mock.add(responses.GET, f"{BASE_URL}/users/login", body="<form></form>")

    with requests.Session() as http:
        client = archive_scraper.ArchiveClient(http, BASE_URL)
        with pytest.raises(archive_scraper.PrivatePageError):
            client.fetch_page("/users/reader/readings")


def test_login_redirect_mid_listing_keeps_earlier_pages(responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(responses.GET, READINGS_URL, body=_listing("1", next_page=True), match=_page(1))
    responses_mock.add(
        responses.GET,
        READINGS_URL,
        status=302,
        headers={"Location": f"{BASE_URL}/users/login"},
        match=_page(2),
    )
    responses_mock.add(responses.GET, f"{BASE_URL}/users/login", body="<form></form>")
    responses_mock.add(responses.GET, BOOKMARKS_URL, body=_listing())
    responses_mock.add(responses.GET, READINGS_URL, body=_listing(), match=_page(1, show="to-read"))

    result = archive_scraper.scrape_library(
        "reader", "pw", manager=AuthSessionManager([StaticStrategy(None)]), base_url=BASE_URL
    )

    assert result.kind is ScrapeKind.AUTHENTICATED
    assert [r.external_id for r in result.records] == ["1"]
    assert result.records[0].observed_status is ReadingStatus.COMPLETED


@patch("archive_scraper.time.sleep")
def test_fetch_page_backs_off_on_rate_limit(mock_sleep, responses_mock: responses.RequestsMock) -> None:
    responses_mock.add(responses.GET, f"{BASE_URL}/works", status=429)
    responses_mock.add(responses.GET, f"{BASE_URL}/works", body="ok")

    with requests.Session() as http:
        assert archive_scraper.ArchiveClient(http, BASE_URL).fetch_page("/works") == "ok"

    mock_sleep.assert_called_once_with(2.0)


def test_sample_works_are_distinct_and_complete() -> None:
    works = archive_scraper.sample_works()
    assert [w.external_id for w in works] == ["12345", "67890"]
    assert {w.observed_status for w in works} == {ReadingStatus.COMPLETED, ReadingStatus.READING}
