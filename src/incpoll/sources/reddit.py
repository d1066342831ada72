from __future__ import annotations

import json
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..errors import TransientHttpError, ValidationError
from ..http_utils import HttpClient, HttpResponse, with_query_params
from ..models import Emission, Page, PageParams, from_epoch_seconds
from ..retry import RetryPolicy, retry_call


REDDIT_API_URL = "https://oauth.reddit.com"
MAX_PAGE_SIZE = 100
TIME_FILTERS = ("hour", "day", "week", "month", "year", "all")
USER_CONTENT = ("links", "comments")
# Reddit 的 context 参数：评论上方最多展示 8 层父评论。
MAX_PARENTS = 8


def _truncate(text: str, limit: int = 400) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


def _int_param(value: int | None) -> str | None:
    return None if value is None else str(value)


def _clean_names(values: tuple[str, ...], *, prefixes: tuple[str, ...]) -> tuple[str, ...]:
    cleaned: list[str] = []
    for v in values:
        v = (v or "").strip()
        for p in prefixes:
            if v.lower().startswith(p):
                v = v[len(p) :]
        v = v.strip("/")
        if v:
            cleaned.append(v)
    return tuple(dict.fromkeys(cleaned))


def _check_parents(value: int | None, *, owner: str) -> None:
    if value is not None and not (0 <= value <= MAX_PARENTS):
        raise ValueError(f"{owner}.number_of_parents must be between 0 and {MAX_PARENTS}, got {value!r}")


def sanitize_error(payload: Any) -> None:
    """
    将 Reddit 的业务错误载荷映射为分类异常（未识别的载荷直接返回）。

    - 需要版主权限、重复提交、活动时长超限 -> ValidationError
    - “请等待 N 分钟”类限流提示 -> TransientHttpError(429)
    """
    text = json.dumps(payload, ensure_ascii=False)
    if "MOD_OF_THIS_SR_REQUIRED" in text:
        raise ValidationError("You must be a moderator of this subreddit to do that")
    if "ALREADY_SUB" in text:
        raise ValidationError(
            "This community doesn't allow links to be posted more than once, and this link has already been shared"
        )
    m = re.search(r"This event can't be longer than \S*\d+\S* days", text)
    if m:
        raise ValidationError(m.group(0))
    m = re.search(r"\S*\d+\S* minute", text)
    if m:
        raise TransientHttpError(f"Reddit rate-limit: please wait {m.group(0)}(s)", status=429)


def _is_listing(value: Any) -> bool:
    return isinstance(value, dict) and value.get("kind") == "Listing" and isinstance(value.get("data"), dict)


def _flatten_comments(children: Any) -> list[Mapping[str, Any]]:
    """展开评论树（replies 为嵌套 Listing）；跳过 kind=more 的占位节点。"""
    out: list[Mapping[str, Any]] = []
    if not isinstance(children, list):
        return out
    for c in children:
        if not isinstance(c, dict) or c.get("kind") != "t1" or not isinstance(c.get("data"), dict):
            continue
        data = c["data"]
        out.append(data)
        replies = data.get("replies")
        if _is_listing(replies):
            out.extend(_flatten_comments(replies["data"].get("children")))
    return out


@dataclass(slots=True)
class RedditClient:
    """
    Reddit OAuth API 的最小封装：鉴权头 + Listing 解析。

    Listing 结构：{"kind": "Listing", "data": {"children": [{"kind": "t3", "data": {...}}], "after": "t3_x"}}

    retry 只用于 search_subreddits；轮询路径上的重试由 poller 统一负责。
    """

    http: HttpClient
    token: str | None = None
    base_url: str = REDDIT_API_URL
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def _headers(self) -> Mapping[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get_json(self, path: str, params: Mapping[str, str | None]) -> tuple[HttpResponse, Any]:
        url = with_query_params(f"{self.base_url.rstrip('/')}/{path.lstrip('/')}", params)
        resp = self.http.get(url, headers=self._headers())
        try:
            return resp, resp.json()
        except ValueError as e:
            raise ValidationError(
                f"Reddit API invalid JSON: status={resp.status} url={resp.url} body_prefix={resp.text()[:400]!r}"
            ) from e

    def get_listing(self, path: str, params: Mapping[str, str | None]) -> Page:
        resp, data = self._get_json(path, params)
        if not _is_listing(data):
            sanitize_error(data)
            raise ValidationError(f"Reddit API expected Listing: url={resp.url} body_prefix={resp.text()[:400]!r}")

        listing = data["data"]
        children = listing.get("children")
        if not isinstance(children, list):
            raise ValidationError(f"Reddit API expected data.children list: url={resp.url}")

        items = tuple(
            c["data"] for c in children if isinstance(c, dict) and isinstance(c.get("data"), dict)
        )
        after = listing.get("after")
        return Page(items=items, next_token=str(after) if after else None)

    def get_comments(self, path: str, params: Mapping[str, str | None]) -> Page:
        """
        帖子评论接口返回两个 Listing 组成的数组：[帖子, 评论树]，只取第二个。

        评论树没有 after 翻页（更深的回复以 kind=more 占位），因此总是单页。
        """
        resp, data = self._get_json(path, params)
        if not (isinstance(data, list) and len(data) == 2 and _is_listing(data[1])):
            sanitize_error(data)
            raise ValidationError(
                f"Reddit API expected [post, comments] listings: url={resp.url} body_prefix={resp.text()[:400]!r}"
            )
        return Page(items=tuple(_flatten_comments(data[1]["data"].get("children"))))

    def search_subreddits(self, query: str) -> list[tuple[str, str]]:
        """
        遍历子版块搜索结果的全部分页，返回 (title, display_name) 列表。

        用于发现可配置的 subreddit 名称；以上一页最后一条的 fullname 作为 after 锚点。
        每页请求按 self.retry 重试。
        """
        results: list[tuple[str, str]] = []
        after: str | None = None
        while True:
            params = {
                "q": query,
                "after": after,
                "limit": str(MAX_PAGE_SIZE),
                "show_users": "false",
                "sort": "relevance",
                "sr_detail": "false",
                "typeahead_active": "false",
            }
            page = retry_call(
                lambda: self.get_listing("/subreddits/search", params),
                self.retry,
                describe=f"reddit search_subreddits q={query!r} after={after!r}",
            )
            if not page.items:
                break
            for it in page.items:
                results.append((str(it.get("title") or ""), str(it.get("display_name") or "")))
            last = page.items[-1].get("name")
            if not isinstance(last, str) or not last or last == after:
                break
            after = last
        return results


@dataclass(slots=True)
class SubredditNewLinks:
    """单个 subreddit 的最新帖子（/r/{subreddit}/new），从新到旧。"""

    subreddit: str
    client: RedditClient
    include_subreddit_details: bool = False

    def name(self) -> str:
        return self.subreddit

    def fetch_page(self, params: PageParams) -> Page:
        sr = urllib.parse.quote(self.subreddit, safe="")
        return self.client.get_listing(
            f"/r/{sr}/new",
            {
                "limit": str(max(1, min(params.limit, MAX_PAGE_SIZE))),
                "after": params.after,
                "before": params.before,
                "sr_detail": _bool_param(self.include_subreddit_details),
            },
        )


@dataclass(slots=True)
class UserActivity:
    """单个用户的帖子或评论（/user/{username}/submitted|comments，sort=new）。"""

    username: str
    client: RedditClient
    content: str = "links"
    time_filter: str = "all"
    include_subreddit_details: bool = False
    number_of_parents: int | None = None

    def name(self) -> str:
        return self.username

    def fetch_page(self, params: PageParams) -> Page:
        user = urllib.parse.quote(self.username, safe="")
        path = "submitted" if self.content == "links" else "comments"
        return self.client.get_listing(
            f"/user/{user}/{path}",
            {
                "limit": str(max(1, min(params.limit, MAX_PAGE_SIZE))),
                "after": params.after,
                "before": params.before,
                "context": _int_param(self.number_of_parents),
                "show": "given",
                "sort": "new",
                "t": self.time_filter,
                "type": self.content,
                "sr_detail": _bool_param(self.include_subreddit_details),
            },
        )


@dataclass(slots=True)
class PostComments:
    """单个帖子下的评论（/r/{subreddit}/comments/{article}，sort=new），展开为一页。"""

    subreddit: str
    article: str
    client: RedditClient
    number_of_parents: int | None = None
    depth: int | None = None
    include_subreddit_details: bool = False

    def name(self) -> str:
        return self.article

    def fetch_page(self, params: PageParams) -> Page:
        sr = urllib.parse.quote(self.subreddit, safe="")
        article = urllib.parse.quote(self.article, safe="")
        return self.client.get_comments(
            f"/r/{sr}/comments/{article}",
            {
                "context": _int_param(self.number_of_parents),
                "depth": _int_param(self.depth),
                "limit": str(max(1, min(params.limit, MAX_PAGE_SIZE))),
                "sort": "new",
                "sr_detail": _bool_param(self.include_subreddit_details),
                "theme": "default",
                "threaded": "true",
                "truncate": "0",
            },
        )


def _created_utc(item: Mapping[str, Any]) -> float:
    return float(item["created_utc"])


def _fullname(item: Mapping[str, Any], kind: str) -> str:
    name = item.get("name")
    if isinstance(name, str) and name:
        return name
    return f"{kind}_{item.get('id') or ''}"


def _comment_emission(item: Mapping[str, Any], *, source_key: str, sub_resource: str) -> Emission:
    created = _created_utc(item)
    return Emission(
        id=_fullname(item, "t1"),
        summary=_truncate(str(item.get("body") or ""), limit=200),
        ts=from_epoch_seconds(created),
        ordering_key=created,
        payload=item,
        source_key=source_key,
        sub_resource=sub_resource,
    )


@dataclass(slots=True)
class RedditSubredditLinksConnector:
    """
    监控一个或多个 subreddit 的新帖子。

    - 每个 subreddit 是一个独立子资源
    - 排序键：created_utc（秒）
    - 事件 id：fullname（t3_xxx）

    热门榜（/r/{sr}/hot）按热度而非时间排序，旧帖随时可能进入榜单，
    无法用时间高水位截止翻页，因此不提供对应的增量 connector。
    """

    subreddits: tuple[str, ...]
    client: RedditClient
    include_subreddit_details: bool = False

    def __post_init__(self) -> None:
        self.subreddits = _clean_names(self.subreddits, prefixes=("/r/", "r/"))
        if not self.subreddits:
            raise ValueError("RedditSubredditLinksConnector.subreddits is empty")

    def key(self) -> str:
        return f"reddit:subreddits:{','.join(sorted(self.subreddits))}:new"

    def sub_resources(self) -> tuple[SubredditNewLinks, ...]:
        return tuple(
            SubredditNewLinks(subreddit=sr, client=self.client, include_subreddit_details=self.include_subreddit_details)
            for sr in self.subreddits
        )

    def ordering_key_of(self, item: Mapping[str, Any]) -> float:
        return _created_utc(item)

    def normalize(self, item: Mapping[str, Any], sub_resource: str) -> Emission:
        created = _created_utc(item)
        return Emission(
            id=_fullname(item, "t3"),
            summary=_truncate(str(item.get("title") or "")),
            ts=from_epoch_seconds(created),
            ordering_key=created,
            payload=item,
            source_key=self.key(),
            sub_resource=sub_resource,
        )


@dataclass(slots=True)
class RedditUserActivityConnector:
    """
    监控一个或多个 Reddit 用户的新帖子（content=links）或新评论（content=comments）。

    time_filter 取值：hour/day/week/month/year/all；number_of_parents 取 0~8（对应 context 参数）；构造时校验。
    """

    usernames: tuple[str, ...]
    client: RedditClient
    content: str = "links"
    time_filter: str = "all"
    include_subreddit_details: bool = False
    number_of_parents: int | None = None

    def __post_init__(self) -> None:
        self.usernames = _clean_names(self.usernames, prefixes=("/u/", "u/", "/user/", "user/"))
        if not self.usernames:
            raise ValueError("RedditUserActivityConnector.usernames is empty")
        if self.content not in USER_CONTENT:
            raise ValueError(f"RedditUserActivityConnector.content must be one of {USER_CONTENT}, got {self.content!r}")
        if self.time_filter not in TIME_FILTERS:
            raise ValueError(
                f"RedditUserActivityConnector.time_filter must be one of {TIME_FILTERS}, got {self.time_filter!r}"
            )
        _check_parents(self.number_of_parents, owner="RedditUserActivityConnector")

    def key(self) -> str:
        return f"reddit:users:{','.join(sorted(self.usernames))}:{self.content}"

    def sub_resources(self) -> tuple[UserActivity, ...]:
        return tuple(
            UserActivity(
                username=u,
                client=self.client,
                content=self.content,
                time_filter=self.time_filter,
                include_subreddit_details=self.include_subreddit_details,
                number_of_parents=self.number_of_parents,
            )
            for u in self.usernames
        )

    def ordering_key_of(self, item: Mapping[str, Any]) -> float:
        return _created_utc(item)

    def normalize(self, item: Mapping[str, Any], sub_resource: str) -> Emission:
        if self.content == "comments":
            return _comment_emission(item, source_key=self.key(), sub_resource=sub_resource)
        created = _created_utc(item)
        return Emission(
            id=_fullname(item, "t3"),
            summary=_truncate(str(item.get("title") or "")),
            ts=from_epoch_seconds(created),
            ordering_key=created,
            payload=item,
            source_key=self.key(),
            sub_resource=sub_resource,
        )


@dataclass(slots=True)
class RedditPostCommentsConnector:
    """
    监控同一 subreddit 下一个或多个帖子的新评论。

    - 每个帖子（article id，可带 t3_ 前缀）是一个独立子资源
    - 排序键：评论的 created_utc；嵌套回复一并展开
    - depth 限制评论树深度（>= 1），number_of_parents 取 0~8
    """

    subreddit: str
    posts: tuple[str, ...]
    client: RedditClient
    number_of_parents: int | None = None
    depth: int | None = None
    include_subreddit_details: bool = False

    def __post_init__(self) -> None:
        subreddits = _clean_names((self.subreddit,), prefixes=("/r/", "r/"))
        if not subreddits:
            raise ValueError("RedditPostCommentsConnector.subreddit is empty")
        self.subreddit = subreddits[0]
        self.posts = _clean_names(self.posts, prefixes=("t3_",))
        if not self.posts:
            raise ValueError("RedditPostCommentsConnector.posts is empty")
        _check_parents(self.number_of_parents, owner="RedditPostCommentsConnector")
        if self.depth is not None and self.depth < 1:
            raise ValueError(f"RedditPostCommentsConnector.depth must be >= 1, got {self.depth!r}")

    def key(self) -> str:
        return f"reddit:comments:{self.subreddit}:{','.join(sorted(self.posts))}"

    def sub_resources(self) -> tuple[PostComments, ...]:
        return tuple(
            PostComments(
                subreddit=self.subreddit,
                article=p,
                client=self.client,
                number_of_parents=self.number_of_parents,
                depth=self.depth,
                include_subreddit_details=self.include_subreddit_details,
            )
            for p in self.posts
        )

    def ordering_key_of(self, item: Mapping[str, Any]) -> float:
        return _created_utc(item)

    def normalize(self, item: Mapping[str, Any], sub_resource: str) -> Emission:
        return _comment_emission(item, source_key=self.key(), sub_resource=sub_resource)
