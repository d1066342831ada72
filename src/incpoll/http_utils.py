from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import AuthError, PollerError, TransientHttpError, ValidationError


RETRIABLE_STATUSES = (408, 429, 500, 502, 503, 504)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


def classify_http_status(
    status: int,
    *,
    url: str,
    body_prefix: str = "",
    retry_after: str | None = None,
) -> PollerError:
    """
    将 HTTP 失败状态码映射为错误分类：
    - 401/403 -> AuthError（不重试）
    - 408/429/5xx -> TransientHttpError（交给 RetryPolicy 退避重试）
    - 其余 4xx -> ValidationError（请求不合法，不重试）
    """
    message = f"HTTP {status} for {url}: {body_prefix!r}"
    if status in (401, 403):
        return AuthError(message, status=status)
    if status in RETRIABLE_STATUSES or status >= 500:
        return TransientHttpError(message, status=status, retry_after=_parse_retry_after(retry_after))
    return ValidationError(message, status=status)


class HttpClient:
    """
    轻量 HTTP 客户端（仅依赖标准库），用于 connector 拉取接口与 webhook sink 投递。

    约定：
    - 单次请求，不在内部重试；重试统一由 retry.RetryPolicy 控制
    - 失败按状态码映射为 errors 中的分类异常
    - 统一超时、User-Agent
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        user_agent: str = "incpoll/0",
        verify_ssl: bool = True,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self._request("GET", url, headers=headers, data=None)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        request_headers = {
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(dict(headers))
        return self._request("POST", url, headers=request_headers, data=data)

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None,
        data: bytes | None,
    ) -> HttpResponse:
        request_headers = {"User-Agent": self._user_agent}
        if headers:
            request_headers.update(dict(headers))

        req = urllib.request.Request(url=url, data=data, headers=request_headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout_seconds, context=self._ssl_context) as resp:  # noqa: S310
                return HttpResponse(
                    status=getattr(resp, "status", 200),
                    url=resp.geturl(),
                    headers={k: v for k, v in resp.headers.items()},
                    body=resp.read(),
                )
        except urllib.error.HTTPError as e:
            try:
                body_prefix = e.read()[:200].decode("utf-8", errors="replace")
            except OSError:
                body_prefix = ""
            retry_after = e.headers.get("Retry-After") if e.headers else None
            raise classify_http_status(e.code, url=url, body_prefix=body_prefix, retry_after=retry_after) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise TransientHttpError(f"{method} {url} failed: {type(e).__name__}: {e}") from e


def with_query_params(url: str, params: Mapping[str, str | None]) -> str:
    parsed = urllib.parse.urlparse(url)
    q = dict(urllib.parse.parse_qsl(parsed.query, keep_blank_values=True))
    q.update({k: v for k, v in params.items() if v is not None})
    new_query = urllib.parse.urlencode(q)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))
