import json
import urllib.parse
from dataclasses import dataclass, field

import pytest

from incpoll.errors import TransientHttpError, ValidationError
from incpoll.http_utils import HttpResponse
from incpoll.models import PageParams
from incpoll.poller import IncrementalPoller, PollerSettings
from incpoll.retry import RetryPolicy
from incpoll.sources.reddit import (
    RedditClient,
    RedditPostCommentsConnector,
    RedditSubredditLinksConnector,
    RedditUserActivityConnector,
    sanitize_error,
)


@dataclass
class FakeHttp:
    """按 (path, after) 路由的内存 HTTP。"""

    pages: dict[tuple[str, str | None], object]
    urls: list[str] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)

    def get(self, url: str, *, headers=None) -> HttpResponse:  # noqa: ANN001, ARG002
        self.urls.append(url)
        if self.failures:
            raise self.failures.pop(0)
        parsed = urllib.parse.urlparse(url)
        after = urllib.parse.parse_qs(parsed.query).get("after", [None])[0]
        body = json.dumps(self.pages[(parsed.path, after)]).encode("utf-8")
        return HttpResponse(status=200, url=url, headers={}, body=body)

    def query(self, index: int) -> dict[str, str]:
        return dict(urllib.parse.parse_qsl(urllib.parse.urlparse(self.urls[index]).query))


def _listing(children: list[dict], after: str | None = None, kind: str = "t3") -> dict:
    return {"kind": "Listing", "data": {"after": after, "children": [{"kind": kind, "data": c} for c in children]}}


def _link(n: int, created: float) -> dict:
    return {"name": f"t3_{n}", "id": str(n), "title": f"post {n}", "created_utc": created}


def test_subreddit_new_links_request_and_paging() -> None:
    http = FakeHttp(pages={("/r/python/new", None): _listing([_link(2, 200.0), _link(1, 100.0)], after="t3_1")})
    client = RedditClient(http=http, token="tok")
    conn = RedditSubredditLinksConnector(subreddits=("r/python",), client=client)
    (sub,) = conn.sub_resources()

    page = sub.fetch_page(PageParams(limit=500))

    assert [x["name"] for x in page.items] == ["t3_2", "t3_1"]
    assert page.next_token == "t3_1"
    assert http.urls[0].startswith("https://oauth.reddit.com/r/python/new?")
    assert http.query(0) == {"limit": "100", "sr_detail": "false"}


def test_subreddit_connector_key_and_normalize() -> None:
    conn = RedditSubredditLinksConnector(
        subreddits=("rust", "/r/python", "rust"),
        client=RedditClient(http=FakeHttp(pages={})),
    )
    assert conn.subreddits == ("rust", "python")
    assert conn.key() == "reddit:subreddits:python,rust:new"

    e = conn.normalize(_link(9, 1700000000.0), "python")
    assert e.id == "t3_9"
    assert e.summary == "post 9"
    assert e.ordering_key == 1700000000.0


def test_user_activity_request_params() -> None:
    http = FakeHttp(pages={("/user/spez/comments", "t1_x"): _listing([], kind="t1")})
    conn = RedditUserActivityConnector(
        usernames=("u/spez",),
        client=RedditClient(http=http),
        content="comments",
        time_filter="week",
        include_subreddit_details=True,
        number_of_parents=3,
    )
    (sub,) = conn.sub_resources()
    page = sub.fetch_page(PageParams(limit=25, after="t1_x"))

    assert page.items == ()
    assert page.next_token is None
    assert http.query(0) == {
        "limit": "25",
        "after": "t1_x",
        "context": "3",
        "show": "given",
        "sort": "new",
        "t": "week",
        "type": "comments",
        "sr_detail": "true",
    }


def test_user_comments_normalize_truncates_body() -> None:
    conn = RedditUserActivityConnector(usernames=("spez",), client=RedditClient(http=FakeHttp(pages={})), content="comments")
    e = conn.normalize({"id": "c1", "body": "x" * 500, "created_utc": 10}, "spez")
    assert e.id == "t1_c1"
    assert len(e.summary) == 200
    assert e.summary.endswith("…")
    assert conn.key() == "reddit:users:spez:comments"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"time_filter": "decade"},
        {"content": "votes"},
        {"usernames": ("",)},
        {"number_of_parents": 9},
        {"number_of_parents": -1},
    ],
)
def test_user_activity_validates_options(kwargs: dict) -> None:
    params = {"usernames": ("spez",), "client": RedditClient(http=FakeHttp(pages={}))}
    params.update(kwargs)
    with pytest.raises(ValueError):
        RedditUserActivityConnector(**params)


def test_sanitize_error_classification() -> None:
    with pytest.raises(ValidationError, match="moderator"):
        sanitize_error({"json": {"errors": [["MOD_OF_THIS_SR_REQUIRED", "mod required", "sr"]]}})
    with pytest.raises(ValidationError, match="already been shared"):
        sanitize_error({"json": {"errors": [["ALREADY_SUB", "already submitted", "url"]]}})
    with pytest.raises(ValidationError, match="can't be longer than"):
        sanitize_error({"json": {"errors": [["BAD", "This event can't be longer than 7 days", "x"]]}})
    with pytest.raises(TransientHttpError) as ei:
        sanitize_error({"json": {"errors": [["RATELIMIT", "try again in 9 minutes.", "ratelimit"]]}})
    assert ei.value.status == 429

    assert sanitize_error({"message": "Not Found"}) is None


def test_non_listing_payload_is_rejected() -> None:
    http = FakeHttp(pages={("/r/python/new", None): {"json": {"errors": [["RATELIMIT", "wait 3 minutes", "x"]]}}})
    (sub,) = RedditSubredditLinksConnector(subreddits=("python",), client=RedditClient(http=http)).sub_resources()
    with pytest.raises(TransientHttpError):
        sub.fetch_page(PageParams(limit=10))

    http2 = FakeHttp(pages={("/r/python/new", None): {"kind": "t5", "data": {}}})
    (sub2,) = RedditSubredditLinksConnector(subreddits=("python",), client=RedditClient(http=http2)).sub_resources()
    with pytest.raises(ValidationError):
        sub2.fetch_page(PageParams(limit=10))


def test_search_subreddits_walks_all_pages() -> None:
    http = FakeHttp(
        pages={
            ("/subreddits/search", None): _listing(
                [
                    {"name": "t5_a", "title": "Python", "display_name": "python"},
                    {"name": "t5_b", "title": "Learn Python", "display_name": "learnpython"},
                ],
                kind="t5",
            ),
            ("/subreddits/search", "t5_b"): _listing(
                [{"name": "t5_c", "title": "Python Jobs", "display_name": "pythonjobs"}], kind="t5"
            ),
            ("/subreddits/search", "t5_c"): _listing([], kind="t5"),
        }
    )
    results = RedditClient(http=http).search_subreddits("python")

    assert results == [
        ("Python", "python"),
        ("Learn Python", "learnpython"),
        ("Python Jobs", "pythonjobs"),
    ]
    assert len(http.urls) == 3
    assert http.query(0)["q"] == "python"


def test_poll_two_subreddits_end_to_end(no_backoff: RetryPolicy) -> None:
    http = FakeHttp(
        pages={
            ("/r/python/new", None): _listing([_link(4, 400.0), _link(3, 300.0)], after="t3_3"),
            ("/r/python/new", "t3_3"): _listing([_link(1, 100.0)]),
            ("/r/rust/new", None): _listing([_link(5, 350.0), _link(2, 150.0)]),
        }
    )
    conn = RedditSubredditLinksConnector(subreddits=("python", "rust"), client=RedditClient(http=http))
    outcome = IncrementalPoller(settings=PollerSettings(retry=no_backoff)).poll(conn, 150.0)

    assert [e.id for e in outcome.emissions] == ["t3_3", "t3_5", "t3_4"]
    assert [e.sub_resource for e in outcome.emissions] == ["python", "rust", "python"]
    assert outcome.new_cursor == 400.0


def test_search_subreddits_retries_transient_failures(no_backoff: RetryPolicy) -> None:
    http = FakeHttp(
        pages={
            ("/subreddits/search", None): _listing([{"name": "t5_a", "title": "Python", "display_name": "python"}], kind="t5"),
            ("/subreddits/search", "t5_a"): _listing([], kind="t5"),
        },
        failures=[TransientHttpError("HTTP 503", status=503)],
    )
    results = RedditClient(http=http, retry=no_backoff).search_subreddits("python")

    assert results == [("Python", "python")]
    assert len(http.urls) == 3
    assert http.query(0) == http.query(1)


def test_search_subreddits_gives_up_after_max_attempts() -> None:
    http = FakeHttp(
        pages={},
        failures=[TransientHttpError("HTTP 502", status=502) for _ in range(3)],
    )
    client = RedditClient(http=http, retry=RetryPolicy(max_attempts=2, base_backoff_seconds=0.0, jitter_ratio=0.0))
    with pytest.raises(TransientHttpError):
        client.search_subreddits("python")
    assert len(http.urls) == 2


def _comment(cid: str, created: float, replies: object = "") -> dict:
    return {"name": f"t1_{cid}", "id": cid, "body": f"comment {cid}", "created_utc": created, "replies": replies}


def _comments_payload(children: list[dict]) -> list[dict]:
    return [_listing([_link(1, 100.0)]), {"kind": "Listing", "data": {"after": None, "children": children}}]


def test_post_comments_request_params_and_flattening() -> None:
    nested = _listing([_comment("c3", 300.0)], kind="t1")
    http = FakeHttp(
        pages={
            ("/r/python/comments/abc", None): _comments_payload(
                [
                    {"kind": "t1", "data": _comment("c2", 250.0, replies=nested)},
                    {"kind": "t1", "data": _comment("c1", 120.0)},
                    {"kind": "more", "data": {"count": 5, "children": ["c9"]}},
                ]
            )
        }
    )
    conn = RedditPostCommentsConnector(
        subreddit="r/python",
        posts=("t3_abc",),
        client=RedditClient(http=http),
        number_of_parents=2,
        depth=4,
    )
    (sub,) = conn.sub_resources()
    page = sub.fetch_page(PageParams(limit=500))

    assert [x["name"] for x in page.items] == ["t1_c2", "t1_c3", "t1_c1"]
    assert page.next_token is None
    assert http.query(0) == {
        "context": "2",
        "depth": "4",
        "limit": "100",
        "sort": "new",
        "sr_detail": "false",
        "theme": "default",
        "threaded": "true",
        "truncate": "0",
    }


def test_post_comments_connector_key_and_normalize() -> None:
    conn = RedditPostCommentsConnector(
        subreddit="/r/python",
        posts=("t3_xyz", "abc", "abc"),
        client=RedditClient(http=FakeHttp(pages={})),
    )
    assert conn.subreddit == "python"
    assert conn.posts == ("xyz", "abc")
    assert conn.key() == "reddit:comments:python:abc,xyz"

    e = conn.normalize(_comment("c7", 1700000000.0), "abc")
    assert e.id == "t1_c7"
    assert e.summary == "comment c7"
    assert e.ordering_key == 1700000000.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"posts": ()},
        {"subreddit": " "},
        {"depth": 0},
        {"number_of_parents": 9},
    ],
)
def test_post_comments_validates_options(kwargs: dict) -> None:
    params = {"subreddit": "python", "posts": ("abc",), "client": RedditClient(http=FakeHttp(pages={}))}
    params.update(kwargs)
    with pytest.raises(ValueError):
        RedditPostCommentsConnector(**params)


def test_post_comments_rejects_non_pair_payload() -> None:
    http = FakeHttp(pages={("/r/python/comments/abc", None): _listing([], kind="t1")})
    (sub,) = RedditPostCommentsConnector(
        subreddit="python", posts=("abc",), client=RedditClient(http=http)
    ).sub_resources()
    with pytest.raises(ValidationError, match=r"\[post, comments\]"):
        sub.fetch_page(PageParams(limit=10))


def test_poll_post_comments_emits_only_newer_than_cursor(no_backoff: RetryPolicy) -> None:
    http = FakeHttp(
        pages={
            ("/r/python/comments/abc", None): _comments_payload(
                [
                    {"kind": "t1", "data": _comment("c3", 300.0)},
                    {"kind": "t1", "data": _comment("c2", 200.0, replies=_listing([_comment("c4", 260.0)], kind="t1"))},
                    {"kind": "t1", "data": _comment("c1", 100.0)},
                ]
            )
        }
    )
    conn = RedditPostCommentsConnector(subreddit="python", posts=("abc",), client=RedditClient(http=http))
    outcome = IncrementalPoller(settings=PollerSettings(retry=no_backoff)).poll(conn, 200.0)

    assert [e.id for e in outcome.emissions] == ["t1_c4", "t1_c3"]
    assert outcome.new_cursor == 300.0
    assert outcome.pages_fetched == 1
