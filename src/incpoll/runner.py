from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime

from .config import AppConfig
from .errors import PollCancelled
from .http_utils import HttpClient
from .models import Emission, OrderingKey, decode_cursor, encode_cursor, utc_now
from .poller import IncrementalPoller, PollerSettings, PollOutcome
from .retry import RetryPolicy
from .sinks.base import Sink
from .sinks.jsonl import JsonlSink
from .sinks.webhook import WebhookSink
from .sources.base import Connector
from .sources.hubspot import HubSpotFormSubmissionsConnector
from .sources.reddit import (
    RedditClient,
    RedditPostCommentsConnector,
    RedditSubredditLinksConnector,
    RedditUserActivityConnector,
)
from .state.sqlite_store import SqliteStateStore
from .state.store import StateStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceRunReport:
    source_key: str
    source_type: str
    cursor_before: str | None
    cursor_after: str | None
    pages_fetched: int
    items_fetched: int
    emissions: int
    emitted: int
    skipped_seen: int
    failed_sub_resources: tuple[str, ...]
    degraded: bool
    cancelled: bool
    error: str | None
    duration_ms: int


@dataclass(slots=True)
class RunOnceReport:
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    sources: tuple[SourceRunReport, ...]
    pages_fetched: int
    items_fetched: int
    emissions: int
    emitted: int
    skipped_seen: int
    degraded_sources: int
    source_errors: int
    cancelled: bool


def _safe_partial_cursor(
    emissions: tuple[Emission, ...],
    sunk: int,
    cursor: OrderingKey | None,
) -> OrderingKey | None:
    """
    取消时只能推进到“已投递部分”的安全高水位：
    已投递的最大 key 必须严格小于第一条未投递的 key，否则同 key 的未投递 item 会被边界过滤吞掉。
    """
    if sunk <= 0:
        return cursor
    if sunk >= len(emissions):
        return emissions[-1].ordering_key
    next_key = emissions[sunk].ordering_key
    for emission in reversed(emissions[:sunk]):
        if emission.ordering_key < next_key:
            return emission.ordering_key
    return cursor


@dataclass(slots=True)
class Runner:
    """
    宿主侧执行器：负责一次轮询周期内的完整数据流闭环：
    State(cursor) -> Poller -> Sinks(dedupe) -> State(cursor)

    单写者约定：同一 connector 同一时刻只有一个周期在跑，connector 之间串行执行。
    """

    state: StateStore
    connectors: tuple[Connector, ...]
    sinks: tuple[Sink, ...]
    poller: IncrementalPoller = field(default_factory=IncrementalPoller)
    dedupe: bool = True

    def run_once(self, cancel: threading.Event | None = None) -> RunOnceReport:
        """
        执行一个轮询周期（单次）。

        执行顺序：
        - 对每个 connector 读取 cursor
        - poller 拉取 cursor 之后的新 item，按从旧到新输出 emissions 与 new_cursor
        - 逐条投递到所有 sink（按指纹去重），全部成功后才持久化 cursor
        """
        started_at = utc_now()
        start_t = time.monotonic()

        self.state.ensure_schema()

        reports: list[SourceRunReport] = []
        cancelled = False
        for connector in self.connectors:
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            report = self._run_connector(connector, cancel)
            reports.append(report)
            if report.cancelled:
                cancelled = True
                break

        finished_at = utc_now()
        return RunOnceReport(
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - start_t) * 1000),
            sources=tuple(reports),
            pages_fetched=sum(r.pages_fetched for r in reports),
            items_fetched=sum(r.items_fetched for r in reports),
            emissions=sum(r.emissions for r in reports),
            emitted=sum(r.emitted for r in reports),
            skipped_seen=sum(r.skipped_seen for r in reports),
            degraded_sources=sum(1 for r in reports if r.degraded),
            source_errors=sum(1 for r in reports if r.error),
            cancelled=cancelled,
        )

    def _run_connector(self, connector: Connector, cancel: threading.Event | None) -> SourceRunReport:
        source_key = connector.key()
        source_type = type(connector).__name__
        cursor_raw = self.state.get_cursor(source_key)
        cursor = decode_cursor(cursor_raw)
        start_t = time.monotonic()

        def _report(
            *,
            outcome: PollOutcome | None = None,
            cursor_after: str | None = cursor_raw,
            emitted: int = 0,
            skipped_seen: int = 0,
            cancelled: bool = False,
            error: str | None = None,
        ) -> SourceRunReport:
            return SourceRunReport(
                source_key=source_key,
                source_type=source_type,
                cursor_before=cursor_raw,
                cursor_after=cursor_after,
                pages_fetched=outcome.pages_fetched if outcome else 0,
                items_fetched=outcome.items_fetched if outcome else 0,
                emissions=len(outcome.emissions) if outcome else 0,
                emitted=emitted,
                skipped_seen=skipped_seen,
                failed_sub_resources=tuple(f.sub_resource for f in outcome.failures) if outcome else (),
                degraded=outcome.degraded if outcome else False,
                cancelled=cancelled,
                error=error,
                duration_ms=int((time.monotonic() - start_t) * 1000),
            )

        try:
            outcome = self.poller.poll(connector, cursor, cancel=cancel)
        except PollCancelled:
            logger.warning("source poll cancelled: source_key=%s cursor=%r", source_key, cursor_raw)
            return _report(cancelled=True)
        except Exception as e:  # noqa: BLE001
            error = f"{type(e).__name__}: {e}"
            logger.exception(
                "source poll failed: source_key=%s source_type=%s cursor=%r",
                source_key,
                source_type,
                cursor_raw,
            )
            self.state.record_failure(source_key=source_key, sub_resource=None, error=error)
            return _report(error=error)

        for failure in outcome.failures:
            logger.warning(
                "sub-resource failed, cycle degraded: source_key=%s sub_resource=%s error=%s",
                source_key,
                failure.sub_resource,
                failure.error,
            )
            self.state.record_failure(source_key=source_key, sub_resource=failure.sub_resource, error=failure.error)

        sunk = 0
        emitted = 0
        skipped_seen = 0
        for emission in outcome.emissions:
            if cancel is not None and cancel.is_set():
                break
            try:
                if self._deliver(emission):
                    emitted += 1
                else:
                    skipped_seen += 1
            except PollCancelled:
                break
            except Exception as e:  # noqa: BLE001
                error = f"{type(e).__name__}: {e}"
                logger.exception(
                    "sink emit failed: source_key=%s emission_id=%s delivered=%d/%d",
                    source_key,
                    emission.id,
                    sunk,
                    len(outcome.emissions),
                )
                self.state.record_failure(source_key=source_key, sub_resource=emission.sub_resource, error=error)
                return _report(outcome=outcome, emitted=emitted, skipped_seen=skipped_seen, error=error)
            sunk += 1

        if sunk < len(outcome.emissions):
            # 被取消：cursor 只推进到已投递部分的安全位置。
            cursor_after = cursor_raw
            if not outcome.degraded:
                partial = _safe_partial_cursor(outcome.emissions, sunk, cursor)
                if partial != cursor:
                    cursor_after = encode_cursor(partial)
                    self.state.set_cursor(source_key, cursor_after)
            logger.warning(
                "source cycle cancelled during emit: source_key=%s delivered=%d/%d cursor_after=%r",
                source_key,
                sunk,
                len(outcome.emissions),
                cursor_after,
            )
            return _report(
                outcome=outcome,
                cursor_after=cursor_after,
                emitted=emitted,
                skipped_seen=skipped_seen,
                cancelled=True,
            )

        cursor_after = cursor_raw
        if outcome.new_cursor != cursor:
            cursor_after = encode_cursor(outcome.new_cursor)
            self.state.set_cursor(source_key, cursor_after)

        return _report(outcome=outcome, cursor_after=cursor_after, emitted=emitted, skipped_seen=skipped_seen)

    def _deliver(self, emission: Emission) -> bool:
        fp = emission.fingerprint()
        if self.dedupe and self.state.has_seen(fp):
            return False
        for sink in self.sinks:
            sink.emit(emission)
        if self.dedupe:
            self.state.mark_seen(fp)
        return True


def build_runner(config: AppConfig, cancel: threading.Event | None = None) -> Runner:
    """
    根据配置构建可运行的 Runner。

    设计取舍：
    - 统一在这里做“配置 -> 实例”的装配，Runner 内只关注流程编排
    - 对 secret/token 只通过环境变量读取，避免落盘
    - cancel 传给 webhook sink，投递重试的退避等待也能被宿主信号打断
    """
    http = HttpClient(timeout_seconds=config.http_timeout_seconds)
    state = SqliteStateStore(config.sqlite_path)

    retry = RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_backoff_seconds=config.retry.base_backoff_seconds,
        backoff_factor=config.retry.backoff_factor,
        max_backoff_seconds=config.retry.max_backoff_seconds,
        jitter_ratio=config.retry.jitter_ratio,
        retriable_statuses=config.retry.retriable_statuses,
    )
    poller = IncrementalPoller(
        settings=PollerSettings(
            page_size=config.poller.page_size,
            backfill_limit=config.poller.backfill_limit,
            max_pages=config.poller.max_pages,
            max_workers=config.poller.max_workers,
            retry=retry,
        )
    )

    connectors: list[Connector] = []
    if config.hubspot and config.hubspot.forms:
        connectors.append(
            HubSpotFormSubmissionsConnector(
                forms=config.hubspot.forms,
                http=http,
                token=config.resolve_env(config.hubspot.token_env),
            )
        )

    if config.reddit:
        client = RedditClient(http=http, token=config.resolve_env(config.reddit.token_env))
        if config.reddit.subreddits:
            connectors.append(
                RedditSubredditLinksConnector(
                    subreddits=config.reddit.subreddits,
                    client=client,
                    include_subreddit_details=config.reddit.include_subreddit_details,
                )
            )
        if config.reddit.users:
            connectors.append(
                RedditUserActivityConnector(
                    usernames=config.reddit.users,
                    client=client,
                    content=config.reddit.user_content,
                    time_filter=config.reddit.time_filter,
                    include_subreddit_details=config.reddit.include_subreddit_details,
                    number_of_parents=config.reddit.number_of_parents,
                )
            )
        if config.reddit.post_comments:
            connectors.append(
                RedditPostCommentsConnector(
                    subreddit=config.reddit.post_comments.subreddit,
                    posts=config.reddit.post_comments.posts,
                    client=client,
                    number_of_parents=config.reddit.number_of_parents,
                    depth=config.reddit.post_comments.depth,
                    include_subreddit_details=config.reddit.include_subreddit_details,
                )
            )

    sinks: list[Sink] = []
    if config.jsonl:
        sinks.append(JsonlSink(path=config.jsonl.path))

    if config.webhook:
        url = config.resolve_env(config.webhook.url_env)
        if url:
            sinks.append(
                WebhookSink(
                    url=url,
                    http=http,
                    token=config.resolve_env(config.webhook.token_env),
                    retry=retry,
                    cancel=cancel,
                )
            )
        else:
            logger.warning("webhook sink configured but env %s is empty; skipped", config.webhook.url_env)

    return Runner(
        state=state,
        connectors=tuple(connectors),
        sinks=tuple(sinks),
        poller=poller,
        dedupe=config.dedupe,
    )
