from __future__ import annotations

import urllib.parse
from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import ValidationError
from ..http_utils import HttpClient, with_query_params
from ..models import Emission, Page, PageParams, from_epoch_millis


HUBSPOT_API_URL = "https://api.hubapi.com"
# Form Integrations submissions API 单页最多 50 条。
MAX_PAGE_SIZE = 50


def _headers(token: str | None) -> Mapping[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


@dataclass(slots=True)
class HubSpotFormSubmissions:
    """
    单个表单的提交记录翻页（子资源）。

    接口：GET /form-integrations/v1/submissions/forms/{formId}?limit=&after=
    响应：{"results": [...], "paging": {"next": {"after": "..."}}}，按提交时间从新到旧。
    """

    form_id: str
    http: HttpClient
    token: str | None = None
    base_url: str = HUBSPOT_API_URL

    def name(self) -> str:
        return self.form_id

    def fetch_page(self, params: PageParams) -> Page:
        form = urllib.parse.quote(self.form_id, safe="")
        url = with_query_params(
            f"{self.base_url.rstrip('/')}/form-integrations/v1/submissions/forms/{form}",
            {
                "limit": str(max(1, min(params.limit, MAX_PAGE_SIZE))),
                "after": params.after,
            },
        )
        resp = self.http.get(url, headers=_headers(self.token))
        try:
            data = resp.json()
        except ValueError as e:
            raise ValidationError(
                f"HubSpot API invalid JSON: status={resp.status} url={resp.url} body_prefix={resp.text()[:400]!r}"
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise ValidationError(f"HubSpot API expected object with results list: url={resp.url}")

        items = tuple(x for x in data["results"] if isinstance(x, dict))
        paging = data.get("paging")
        next_obj = paging.get("next") if isinstance(paging, dict) else None
        after = next_obj.get("after") if isinstance(next_obj, dict) else None
        return Page(items=items, next_token=str(after) if after else None)


@dataclass(slots=True)
class HubSpotFormSubmissionsConnector:
    """
    监控一个或多个 HubSpot 表单的新提交。

    - 每个表单是一个独立子资源，并发拉取
    - 排序键：submittedAt（毫秒时间戳）
    - 事件 id：pageUrl + submittedAt
    """

    forms: tuple[str, ...]
    http: HttpClient
    token: str | None = None
    base_url: str = HUBSPOT_API_URL

    def __post_init__(self) -> None:
        forms = tuple(dict.fromkeys(f.strip() for f in self.forms if f and f.strip()))
        if not forms:
            raise ValueError("HubSpotFormSubmissionsConnector.forms is empty")
        self.forms = forms

    def key(self) -> str:
        return f"hubspot:form_submissions:{','.join(sorted(self.forms))}"

    def sub_resources(self) -> tuple[HubSpotFormSubmissions, ...]:
        return tuple(
            HubSpotFormSubmissions(form_id=f, http=self.http, token=self.token, base_url=self.base_url)
            for f in self.forms
        )

    def ordering_key_of(self, item: Mapping[str, Any]) -> int:
        return int(item["submittedAt"])

    def normalize(self, item: Mapping[str, Any], sub_resource: str) -> Emission:
        ts = self.ordering_key_of(item)
        submitted = from_epoch_millis(ts)
        page_url = str(item.get("pageUrl") or "")
        return Emission(
            id=f"{page_url}{ts}",
            summary=f"Form submitted at {submitted:%Y-%m-%d} {submitted:%H:%M:%S}",
            ts=submitted,
            ordering_key=ts,
            payload=item,
            source_key=self.key(),
            sub_resource=sub_resource,
        )
