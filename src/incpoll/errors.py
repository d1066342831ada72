from __future__ import annotations

from typing import Any


class PollerError(Exception):
    """轮询链路的异常基类。"""


class TransientHttpError(PollerError):
    """
    可重试的 HTTP 失败：408/429/5xx、超时、连接失败。

    status 为 None 表示网络层失败（没有拿到 HTTP 响应）。
    """

    def __init__(self, message: str, *, status: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class AuthError(PollerError):
    """鉴权失败（401/403），不重试。"""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ValidationError(PollerError, ValueError):
    """请求参数或响应结构不合法，不重试。"""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PollCancelled(PollerError):
    """宿主取消了本轮轮询（超时等）。"""


class PollCycleFailed(PollerError):
    """
    本轮轮询整体失败：cursor 不推进，下一轮从同一位置重试。
    """

    def __init__(self, message: str, *, source_key: str, failures: tuple[Any, ...] = ()) -> None:
        super().__init__(message)
        self.source_key = source_key
        self.failures = failures


class PartialSubResourceFailure(PollerError):
    """
    多个子资源并发轮询时部分失败：成功部分照常投递，本轮标记为 degraded。
    """

    def __init__(self, message: str, *, source_key: str, failures: tuple[Any, ...]) -> None:
        super().__init__(message)
        self.source_key = source_key
        self.failures = failures
