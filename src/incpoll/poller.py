from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import (
    AuthError,
    PartialSubResourceFailure,
    PollCancelled,
    PollCycleFailed,
    TransientHttpError,
)
from .models import Emission, OrderingKey, PageParams
from .retry import RetryPolicy, retry_call
from .sources.base import Connector, PagedSource


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PollerSettings:
    """
    轮询器配置。

    page_size:
      - 有 cursor 时每页条数上限（connector 会再按平台上限截断）
    backfill_limit:
      - 首次运行（无 cursor）只拉一页，避免无界的历史回填
    max_pages:
      - 单个子资源单轮最多翻页数；None 表示不限制（仅靠 cursor 截止与重复 token 检测停止）
    max_workers:
      - 多个子资源并发拉取的线程数上限
    """

    page_size: int = 100
    backfill_limit: int = 25
    max_pages: int | None = None
    max_workers: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("PollerSettings.page_size must be >= 1")
        if self.backfill_limit < 1:
            raise ValueError("PollerSettings.backfill_limit must be >= 1")
        if self.max_pages is not None and self.max_pages < 1:
            raise ValueError("PollerSettings.max_pages must be >= 1 or None")
        if self.max_workers < 1:
            raise ValueError("PollerSettings.max_workers must be >= 1")


@dataclass(frozen=True, slots=True)
class SubResourceFailure:
    sub_resource: str
    error: str
    exception: BaseException = field(compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class PollOutcome:
    source_key: str
    cursor_before: OrderingKey | None
    new_cursor: OrderingKey | None
    emissions: tuple[Emission, ...]
    items_fetched: int = 0
    pages_fetched: int = 0
    failures: tuple[SubResourceFailure, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.failures)

    def raise_for_failures(self) -> None:
        if not self.failures:
            return
        names = ", ".join(f.sub_resource for f in self.failures)
        raise PartialSubResourceFailure(
            f"{self.source_key}: sub-resources failed: {names}",
            source_key=self.source_key,
            failures=self.failures,
        )


@dataclass(slots=True)
class _SubResult:
    name: str
    entries: list[tuple[OrderingKey, Mapping[str, Any]]]
    items_fetched: int
    pages_fetched: int


@dataclass(slots=True)
class IncrementalPoller:
    """
    通用增量轮询：给定 connector 与上次的 cursor，取回 cursor 之后的全部新 item，
    按时间从旧到新输出 Emission，并计算新的 cursor。

    cursor 语义：
    - 严格大于 cursor 的 item 才会输出（等于 cursor 视为已输出）
    - 新 cursor = 本轮实际输出的 item 中最大的 ordering key
    - 有子资源失败时 cursor 保持不变（失败子资源的未见 item 都在旧 cursor 之上）
    """

    settings: PollerSettings = field(default_factory=PollerSettings)

    def poll(
        self,
        connector: Connector,
        cursor: OrderingKey | None,
        *,
        cancel: threading.Event | None = None,
    ) -> PollOutcome:
        cancel = cancel if cancel is not None else threading.Event()
        source_key = connector.key()
        subs = list(connector.sub_resources())
        if not subs:
            return PollOutcome(source_key=source_key, cursor_before=cursor, new_cursor=cursor, emissions=())

        results: list[_SubResult] = []
        failures: list[SubResourceFailure] = []

        if len(subs) == 1:
            try:
                results.append(self._poll_sub(connector, subs[0], cursor, cancel))
            except TransientHttpError as e:
                if self.settings.retry.is_retriable(e):
                    reason = f"retries exhausted after {self.settings.retry.max_attempts} attempts"
                else:
                    reason = "non-retriable transient failure"
                raise PollCycleFailed(
                    f"{source_key}: {reason} for {subs[0].name()}: {e}",
                    source_key=source_key,
                ) from e
        else:
            results, failures = self._poll_concurrently(connector, subs, cursor, cancel)

        emissions = self._merge(connector, source_key, results)
        if failures:
            new_cursor = cursor
        elif emissions:
            new_cursor = max(e.ordering_key for e in emissions)
        else:
            new_cursor = cursor

        outcome = PollOutcome(
            source_key=source_key,
            cursor_before=cursor,
            new_cursor=new_cursor,
            emissions=tuple(emissions),
            items_fetched=sum(r.items_fetched for r in results),
            pages_fetched=sum(r.pages_fetched for r in results),
            failures=tuple(failures),
        )
        logger.info(
            "poll done: source_key=%s sub_resources=%d pages=%d items=%d emissions=%d failures=%d",
            source_key,
            len(subs),
            outcome.pages_fetched,
            outcome.items_fetched,
            len(outcome.emissions),
            len(outcome.failures),
        )
        return outcome

    def _poll_concurrently(
        self,
        connector: Connector,
        subs: list[PagedSource],
        cursor: OrderingKey | None,
        cancel: threading.Event,
    ) -> tuple[list[_SubResult], list[SubResourceFailure]]:
        source_key = connector.key()
        results: list[_SubResult] = []
        failures: list[SubResourceFailure] = []
        auth_error: AuthError | None = None
        cancelled: PollCancelled | None = None

        workers = min(self.settings.max_workers, len(subs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="incpoll") as pool:
            futures = [(sub, pool.submit(self._poll_sub, connector, sub, cursor, cancel)) for sub in subs]
            for sub, future in futures:
                try:
                    results.append(future.result())
                except AuthError as e:
                    auth_error = auth_error or e
                except PollCancelled as e:
                    cancelled = cancelled or e
                except Exception as e:  # noqa: BLE001
                    logger.warning(
                        "sub-resource poll failed: source_key=%s sub_resource=%s error=%s: %s",
                        source_key,
                        sub.name(),
                        type(e).__name__,
                        e,
                    )
                    failures.append(SubResourceFailure(sub.name(), f"{type(e).__name__}: {e}", e))

        # 凭据在子资源间共享，鉴权失败直接中止整轮。
        if auth_error is not None:
            raise auth_error
        if cancelled is not None:
            raise cancelled
        if failures and not results:
            raise PollCycleFailed(
                f"{source_key}: all {len(subs)} sub-resources failed",
                source_key=source_key,
                failures=tuple(failures),
            ) from failures[0].exception
        return results, failures

    def _poll_sub(
        self,
        connector: Connector,
        sub: PagedSource,
        cursor: OrderingKey | None,
        cancel: threading.Event,
    ) -> _SubResult:
        name = sub.name()
        describe = f"{connector.key()}/{name}"
        limit = self.settings.backfill_limit if cursor is None else self.settings.page_size

        newer: list[tuple[OrderingKey, Mapping[str, Any]]] = []
        items_fetched = 0
        pages_fetched = 0
        seen_tokens: set[str] = set()
        after: str | None = None

        while True:
            if cancel.is_set():
                raise PollCancelled(f"{describe} cancelled")

            params = PageParams(limit=limit, after=after)
            page = retry_call(
                lambda: sub.fetch_page(params),
                self.settings.retry,
                cancel=cancel,
                describe=f"{describe} fetch_page",
            )
            pages_fetched += 1
            items_fetched += len(page.items)

            oldest: OrderingKey | None = None
            for item in page.items:
                try:
                    key = connector.ordering_key_of(item)
                except (KeyError, TypeError, ValueError):
                    logger.debug("item without ordering key skipped: source=%s item=%r", describe, item)
                    continue
                if oldest is None or key < oldest:
                    oldest = key
                if cursor is None or key > cursor:
                    newer.append((key, item))

            # 首次运行：只回填一页。
            if cursor is None:
                break
            if not page.items:
                break
            if oldest is not None and oldest <= cursor:
                break
            token = page.next_token
            if not token:
                break
            if token in seen_tokens:
                logger.warning("pagination token repeated, stopping: source=%s token=%r", describe, token)
                break
            if self.settings.max_pages is not None and pages_fetched >= self.settings.max_pages:
                logger.warning(
                    "max_pages reached before catching up with cursor: source=%s max_pages=%d",
                    describe,
                    self.settings.max_pages,
                )
                break
            seen_tokens.add(token)
            after = token

        # 上游从新到旧返回；先反转，再按排序键稳定排序兜底“近似有序”的接口。
        newer.reverse()
        newer.sort(key=lambda entry: entry[0])
        return _SubResult(name=name, entries=newer, items_fetched=items_fetched, pages_fetched=pages_fetched)

    def _merge(self, connector: Connector, source_key: str, results: list[_SubResult]) -> list[Emission]:
        tagged: list[tuple[OrderingKey, str, Mapping[str, Any]]] = []
        for r in results:
            tagged.extend((key, r.name, item) for key, item in r.entries)
        tagged.sort(key=lambda entry: entry[0])

        emissions: list[Emission] = []
        seen_ids: set[str] = set()
        for key, name, item in tagged:
            emission = connector.normalize(item, name)
            if emission.id in seen_ids:
                continue
            seen_ids.add(emission.id)
            emissions.append(
                dataclasses.replace(emission, ordering_key=key, source_key=source_key, sub_resource=name)
            )
        return emissions
