from __future__ import annotations

from typing import Protocol

from ..models import Emission


class Sink(Protocol):
    """
    下游投递接口：每条 Emission 调用一次 emit，按顺序调用。

    约定：
    - emit 返回即视为已持久化（宿主已落盘/已确认）
    - emit 失败抛异常，由 runner 中止本轮并保持 cursor 不变
    - channel() 用于日志与故障记录
    """

    def channel(self) -> str: ...

    def emit(self, emission: Emission) -> None: ...
