from __future__ import annotations

from typing import Protocol


class StateStore(Protocol):
    """
    状态与幂等层接口：
    - cursor：每个 connector 的高水位（单写者，仅在一轮全部投递成功后保存）
    - seen_emissions：Emission 指纹去重集合（下游 unique 去重策略）
    - cycle_failures：轮询/子资源失败留痕
    """

    def ensure_schema(self) -> None: ...

    def get_cursor(self, source_key: str) -> str | None: ...

    def set_cursor(self, source_key: str, cursor: str | None) -> None: ...

    def has_seen(self, fingerprint: str) -> bool: ...

    def mark_seen(self, fingerprint: str) -> None: ...

    def record_failure(self, *, source_key: str, sub_resource: str | None, error: str) -> None: ...
