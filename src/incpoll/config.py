from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .http_utils import RETRIABLE_STATUSES
from .sources.reddit import MAX_PARENTS, TIME_FILTERS, USER_CONTENT


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Expected object at {where}, got {type(value)}")
    return value


def _get_bool(d: Mapping[str, Any], key: str, default: bool) -> bool:
    v = d.get(key, default)
    return bool(v)


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_float(d: Mapping[str, Any], key: str, default: float) -> float:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return float(v)
    except Exception:
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _get_opt_int(d: Mapping[str, Any], key: str, *, where: str, minimum: int, maximum: int | None = None) -> int | None:
    v = d.get(key)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, int) or v < minimum or (maximum is not None and v > maximum):
        bound = f"{minimum}..{maximum}" if maximum is not None else f">= {minimum}"
        raise ValueError(f"Invalid value at {where}.{key}: {v!r}, expected integer {bound} or null")
    return v


def _get_str_list(d: Mapping[str, Any], key: str, default: list[str]) -> list[str]:
    v = d.get(key, default)
    if v is None:
        return list(default)
    if isinstance(v, list):
        return [str(x) for x in v]
    return list(default)


def _get_choice(d: Mapping[str, Any], key: str, default: str, choices: tuple[str, ...], *, where: str) -> str:
    v = str(d.get(key, default))
    if v not in choices:
        raise ValueError(f"Invalid value at {where}.{key}: {v!r}, expected one of {list(choices)}")
    return v


@dataclass(frozen=True, slots=True)
class PollerConfig:
    """
    增量轮询参数。

    page_size:
      - 有 cursor 时每页条数（各平台会再按自身上限截断：HubSpot 50，Reddit 100）
    backfill_limit:
      - 首次运行只回填一页的条数
    max_pages:
      - 单个子资源单轮翻页上限，null 表示不限制
    max_workers:
      - 多子资源并发线程数
    """

    page_size: int = 100
    backfill_limit: int = 25
    max_pages: int | None = None
    max_workers: int = 4


@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_attempts: int = 4
    base_backoff_seconds: float = 0.8
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 30.0
    jitter_ratio: float = 0.25
    retriable_statuses: tuple[int, ...] = RETRIABLE_STATUSES


@dataclass(frozen=True, slots=True)
class HubSpotSourceConfig:
    """
    HubSpot 表单提交数据源。

    forms:
      - 表单 id（guid）列表，每个表单一个子资源
    token_env:
      - Private App token 的环境变量名
    """

    forms: tuple[str, ...]
    token_env: str | None


@dataclass(frozen=True, slots=True)
class RedditPostCommentsConfig:
    """
    监控同一 subreddit 下若干帖子的新评论；depth 为评论树深度上限（null 表示不限制）。
    """

    subreddit: str
    posts: tuple[str, ...]
    depth: int | None = None


@dataclass(frozen=True, slots=True)
class RedditSourceConfig:
    """
    Reddit 数据源。

    subreddits:
      - 监控新帖子的 subreddit 列表
    users / user_content / time_filter:
      - 监控指定用户的帖子（links）或评论（comments）；time_filter 取 hour/day/week/month/year/all
    number_of_parents:
      - 评论附带的父评论层数（Reddit 的 context 参数，0~8）；null 时不传
    post_comments:
      - 可选，见 RedditPostCommentsConfig
    token_env:
      - OAuth access token 的环境变量名
    """

    subreddits: tuple[str, ...]
    users: tuple[str, ...]
    user_content: str
    time_filter: str
    include_subreddit_details: bool
    token_env: str | None
    number_of_parents: int | None = None
    post_comments: RedditPostCommentsConfig | None = None


@dataclass(frozen=True, slots=True)
class JsonlSinkConfig:
    path: str


@dataclass(frozen=True, slots=True)
class WebhookSinkConfig:
    url_env: str
    token_env: str | None = None


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    poll_interval_seconds:
      - 轮询间隔（daemon 模式下生效）
    sqlite_path:
      - SQLite 状态库路径（负责 cursor/去重/失败记录）
    dedupe:
      - 是否按 Emission 指纹做下游去重（unique 策略）
    """

    poll_interval_seconds: int
    sqlite_path: str
    http_timeout_seconds: float
    dedupe: bool
    poller: PollerConfig
    retry: RetryConfig
    hubspot: HubSpotSourceConfig | None
    reddit: RedditSourceConfig | None
    jsonl: JsonlSinkConfig | None
    webhook: WebhookSinkConfig | None

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)


def _load_poller(root: Mapping[str, Any]) -> PollerConfig:
    p = _require_dict(root.get("poller", {}), where="$.poller")
    page_size = _get_int(p, "page_size", 100)
    backfill_limit = _get_int(p, "backfill_limit", 25)
    max_workers = _get_int(p, "max_workers", 4)
    max_pages_raw = p.get("max_pages")
    max_pages = None if max_pages_raw is None else _get_int(p, "max_pages", 0)
    if page_size < 1 or backfill_limit < 1 or max_workers < 1:
        raise ValueError("Invalid $.poller: page_size/backfill_limit/max_workers must be >= 1")
    if max_pages is not None and max_pages < 1:
        raise ValueError("Invalid $.poller.max_pages: must be >= 1 or null")
    return PollerConfig(
        page_size=page_size,
        backfill_limit=backfill_limit,
        max_pages=max_pages,
        max_workers=max_workers,
    )


def _load_retry(root: Mapping[str, Any]) -> RetryConfig:
    r = _require_dict(root.get("retry", {}), where="$.retry")
    statuses_raw = r.get("retriable_statuses", list(RETRIABLE_STATUSES))
    if not isinstance(statuses_raw, list) or not all(isinstance(s, int) and not isinstance(s, bool) for s in statuses_raw):
        raise ValueError("Invalid $.retry.retriable_statuses: expected list of integers")
    return RetryConfig(
        max_attempts=max(1, _get_int(r, "max_attempts", 4)),
        base_backoff_seconds=max(0.0, _get_float(r, "base_backoff_seconds", 0.8)),
        backoff_factor=max(1.0, _get_float(r, "backoff_factor", 2.0)),
        max_backoff_seconds=max(0.0, _get_float(r, "max_backoff_seconds", 30.0)),
        jitter_ratio=max(0.0, _get_float(r, "jitter_ratio", 0.25)),
        retriable_statuses=tuple(statuses_raw),
    )


def load_config(config_path: str) -> AppConfig:
    """
    使用 JSON 作为配置落地形式。

    JSON 顶层结构（示意）：
    {
      "poll_interval_seconds": 60,
      "state": { "sqlite_path": "./incpoll_state.sqlite3" },
      "poller": { "page_size": 100, "backfill_limit": 25, "max_pages": null, "max_workers": 4 },
      "retry": { "max_attempts": 4, "base_backoff_seconds": 0.8, "backoff_factor": 2 },
      "sources": {
        "hubspot": { "forms": ["<form-guid>"], "token_env": "HUBSPOT_TOKEN" },
        "reddit": { "subreddits": ["python"], "users": [], "user_content": "links",
                    "time_filter": "all", "number_of_parents": null, "token_env": "REDDIT_TOKEN",
                    "post_comments": { "subreddit": "python", "posts": ["t3_abc123"], "depth": null } }
      },
      "sinks": {
        "jsonl": { "path": "./emissions.jsonl" },
        "webhook": { "url_env": "INCPOLL_WEBHOOK_URL" }
      }
    }
    """
    with open(config_path, "rb") as f:
        raw = json.loads(f.read().decode("utf-8"))

    root = _require_dict(raw, where="$")
    poll_interval_seconds = _get_int(root, "poll_interval_seconds", 60)
    http_timeout_seconds = _get_float(root, "http_timeout_seconds", 20.0)
    dedupe = _get_bool(root, "dedupe", True)

    state = _require_dict(root.get("state", {"sqlite_path": "./incpoll_state.sqlite3"}), where="$.state")
    sqlite_path = str(state.get("sqlite_path") or "./incpoll_state.sqlite3")

    sources = _require_dict(root.get("sources", {}), where="$.sources")

    hubspot_cfg: HubSpotSourceConfig | None = None
    if isinstance(sources.get("hubspot"), dict):
        hs = _require_dict(sources["hubspot"], where="$.sources.hubspot")
        hubspot_cfg = HubSpotSourceConfig(
            forms=tuple(_get_str_list(hs, "forms", [])),
            token_env=_get_str(hs, "token_env", "HUBSPOT_TOKEN"),
        )

    reddit_cfg: RedditSourceConfig | None = None
    if isinstance(sources.get("reddit"), dict):
        rd = _require_dict(sources["reddit"], where="$.sources.reddit")
        post_comments_cfg: RedditPostCommentsConfig | None = None
        if rd.get("post_comments") is not None:
            pc = _require_dict(rd["post_comments"], where="$.sources.reddit.post_comments")
            subreddit = _get_str(pc, "subreddit", "") or ""
            posts = tuple(_get_str_list(pc, "posts", []))
            if not subreddit.strip() or not posts:
                raise ValueError("Invalid $.sources.reddit.post_comments: subreddit and posts are required")
            post_comments_cfg = RedditPostCommentsConfig(
                subreddit=subreddit,
                posts=posts,
                depth=_get_opt_int(pc, "depth", where="$.sources.reddit.post_comments", minimum=1),
            )
        reddit_cfg = RedditSourceConfig(
            subreddits=tuple(_get_str_list(rd, "subreddits", [])),
            users=tuple(_get_str_list(rd, "users", [])),
            user_content=_get_choice(rd, "user_content", "links", USER_CONTENT, where="$.sources.reddit"),
            time_filter=_get_choice(rd, "time_filter", "all", TIME_FILTERS, where="$.sources.reddit"),
            include_subreddit_details=_get_bool(rd, "include_subreddit_details", False),
            token_env=_get_str(rd, "token_env", "REDDIT_TOKEN"),
            number_of_parents=_get_opt_int(
                rd, "number_of_parents", where="$.sources.reddit", minimum=0, maximum=MAX_PARENTS
            ),
            post_comments=post_comments_cfg,
        )

    sinks = _require_dict(root.get("sinks", {}), where="$.sinks")

    jsonl_cfg: JsonlSinkConfig | None = None
    if isinstance(sinks.get("jsonl"), dict):
        jl = _require_dict(sinks["jsonl"], where="$.sinks.jsonl")
        jsonl_cfg = JsonlSinkConfig(path=str(jl.get("path") or "./incpoll_emissions.jsonl"))

    webhook_cfg: WebhookSinkConfig | None = None
    if isinstance(sinks.get("webhook"), dict):
        wh = _require_dict(sinks["webhook"], where="$.sinks.webhook")
        webhook_cfg = WebhookSinkConfig(
            url_env=str(wh.get("url_env") or "INCPOLL_WEBHOOK_URL"),
            token_env=_get_str(wh, "token_env", None),
        )

    return AppConfig(
        poll_interval_seconds=poll_interval_seconds,
        sqlite_path=sqlite_path,
        http_timeout_seconds=http_timeout_seconds,
        dedupe=dedupe,
        poller=_load_poller(root),
        retry=_load_retry(root),
        hubspot=hubspot_cfg,
        reddit=reddit_cfg,
        jsonl=jsonl_cfg,
        webhook=webhook_cfg,
    )
