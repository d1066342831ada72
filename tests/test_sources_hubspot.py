import json
import urllib.parse
from dataclasses import dataclass, field

import pytest

from incpoll.errors import ValidationError
from incpoll.http_utils import HttpResponse
from incpoll.models import PageParams
from incpoll.poller import IncrementalPoller, PollerSettings
from incpoll.retry import RetryPolicy
from incpoll.sources.hubspot import HubSpotFormSubmissions, HubSpotFormSubmissionsConnector


@dataclass
class FakeHttp:
    """按 (path, after) 路由的内存 HTTP；记录全部请求 URL 与请求头。"""

    pages: dict[tuple[str, str | None], object]
    urls: list[str] = field(default_factory=list)
    headers: list[dict] = field(default_factory=list)

    def get(self, url: str, *, headers=None) -> HttpResponse:  # noqa: ANN001
        self.urls.append(url)
        self.headers.append(dict(headers or {}))
        parsed = urllib.parse.urlparse(url)
        after = urllib.parse.parse_qs(parsed.query).get("after", [None])[0]
        payload = self.pages[(parsed.path, after)]
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        return HttpResponse(status=200, url=url, headers={}, body=body)


def _submission(ts: int, page_url: str = "https://example.com/contact") -> dict:
    return {"submittedAt": ts, "pageUrl": page_url, "values": [{"name": "email", "value": "a@b.c"}]}


FORM_PATH = "/form-integrations/v1/submissions/forms/"


def test_fetch_page_maps_results_and_paging() -> None:
    http = FakeHttp(
        pages={
            (FORM_PATH + "f1", None): {
                "results": [_submission(3000), _submission(2000)],
                "paging": {"next": {"after": "abc"}},
            }
        }
    )
    sub = HubSpotFormSubmissions(form_id="f1", http=http, token="tok")
    page = sub.fetch_page(PageParams(limit=500))

    assert [x["submittedAt"] for x in page.items] == [3000, 2000]
    assert page.next_token == "abc"
    assert http.urls == ["https://api.hubapi.com/form-integrations/v1/submissions/forms/f1?limit=50"]
    assert http.headers[0]["Authorization"] == "Bearer tok"


def test_fetch_page_last_page_has_no_token() -> None:
    http = FakeHttp(pages={(FORM_PATH + "f1", "abc"): {"results": []}})
    page = HubSpotFormSubmissions(form_id="f1", http=http).fetch_page(PageParams(limit=10, after="abc"))
    assert page.items == ()
    assert page.next_token is None
    assert "after=abc" in http.urls[0]
    assert "Authorization" not in http.headers[0]


@pytest.mark.parametrize("payload", [b"<html>oops</html>", {"status": "error"}, [1, 2]])
def test_fetch_page_rejects_unexpected_payload(payload) -> None:  # noqa: ANN001
    http = FakeHttp(pages={(FORM_PATH + "f1", None): payload})
    with pytest.raises(ValidationError):
        HubSpotFormSubmissions(form_id="f1", http=http).fetch_page(PageParams(limit=10))


def test_connector_key_and_normalize() -> None:
    conn = HubSpotFormSubmissionsConnector(forms=("f2", " f1 ", "f2", ""), http=FakeHttp(pages={}))
    assert conn.forms == ("f2", "f1")
    assert conn.key() == "hubspot:form_submissions:f1,f2"
    assert [s.name() for s in conn.sub_resources()] == ["f2", "f1"]

    e = conn.normalize(_submission(1700000000000), "f1")
    assert e.id == "https://example.com/contact1700000000000"
    assert e.summary == "Form submitted at 2023-11-14 22:13:20"
    assert e.ordering_key == 1700000000000
    assert e.sub_resource == "f1"


def test_connector_requires_forms() -> None:
    with pytest.raises(ValueError):
        HubSpotFormSubmissionsConnector(forms=(" ",), http=FakeHttp(pages={}))


def test_poll_two_forms_end_to_end(no_backoff: RetryPolicy) -> None:
    http = FakeHttp(
        pages={
            (FORM_PATH + "f1", None): {
                "results": [_submission(5000, "https://a"), _submission(4000, "https://a")],
                "paging": {"next": {"after": "p2"}},
            },
            (FORM_PATH + "f1", "p2"): {"results": [_submission(1000, "https://a")]},
            (FORM_PATH + "f2", None): {"results": [_submission(4500, "https://b"), _submission(900, "https://b")]},
        }
    )
    conn = HubSpotFormSubmissionsConnector(forms=("f1", "f2"), http=http)
    outcome = IncrementalPoller(settings=PollerSettings(retry=no_backoff)).poll(conn, 1000)

    assert [e.id for e in outcome.emissions] == ["https://a4000", "https://b4500", "https://a5000"]
    assert outcome.new_cursor == 5000
    assert {e.source_key for e in outcome.emissions} == {conn.key()}
