from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import PollCancelled, PollerError, TransientHttpError
from .http_utils import RETRIABLE_STATUSES


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    显式的重试策略（替代隐式的全局重试约定）。

    max_attempts:
      - 总尝试次数上限（含首次）
    base_backoff_seconds / backoff_factor / max_backoff_seconds:
      - 第 n 次失败后的等待：min(max, base * factor ** (n - 1))，再加 jitter
    retriable_statuses:
      - 额外可重试的 HTTP 状态码（默认含 408/429）；任意 5xx 与 status 为 None（网络层失败）总是可重试
    """

    max_attempts: int = 4
    base_backoff_seconds: float = 0.8
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 30.0
    jitter_ratio: float = 0.25
    retriable_statuses: tuple[int, ...] = RETRIABLE_STATUSES

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.base_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("RetryPolicy backoff seconds must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("RetryPolicy.backoff_factor must be >= 1")
        if self.jitter_ratio < 0:
            raise ValueError("RetryPolicy.jitter_ratio must be >= 0")

    def is_retriable(self, exc: BaseException) -> bool:
        if not isinstance(exc, TransientHttpError):
            return False
        return exc.status is None or exc.status >= 500 or exc.status in self.retriable_statuses

    def backoff_seconds(
        self,
        attempt: int,
        *,
        retry_after: float | None = None,
        rng: random.Random | None = None,
    ) -> float:
        backoff = min(self.max_backoff_seconds, self.base_backoff_seconds * (self.backoff_factor ** (attempt - 1)))
        jitter = (rng or random).random() * self.jitter_ratio * backoff
        delay = backoff + jitter
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_backoff_seconds))
        return delay


def _wait(cancel: threading.Event | None, seconds: float) -> bool:
    """等待 seconds 秒；返回 True 表示等待期间收到取消信号。"""
    if cancel is None:
        time.sleep(seconds)
        return False
    return cancel.wait(seconds)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    cancel: threading.Event | None = None,
    describe: str = "call",
    on_retry: Callable[[int, PollerError, float], None] | None = None,
) -> T:
    """
    按 policy 执行 fn：

    - 可重试错误：指数退避后重试，直到 max_attempts；耗尽后抛出最后一次的异常
    - 不可重试错误（AuthError/ValidationError 等）：立即抛出
    - 退避等待与 cancel 共用同一个信号，取消时抛 PollCancelled
    """
    attempt = 0
    while True:
        attempt += 1
        if cancel is not None and cancel.is_set():
            raise PollCancelled(f"{describe} cancelled before attempt {attempt}")
        try:
            return fn()
        except PollerError as e:
            if not policy.is_retriable(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.backoff_seconds(attempt, retry_after=getattr(e, "retry_after", None))
            if on_retry is not None:
                on_retry(attempt, e, delay)
            logger.warning(
                "transient failure, retrying: what=%s attempt=%d/%d delay=%.2fs error=%s",
                describe,
                attempt,
                policy.max_attempts,
                delay,
                e,
            )
            if _wait(cancel, delay):
                raise PollCancelled(f"{describe} cancelled during backoff") from e
