from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping, Union


OrderingKey = Union[datetime, int, float, str]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123Z
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def from_epoch_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)


def from_epoch_seconds(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=UTC)


@dataclass(frozen=True, slots=True)
class PageParams:
    """
    单次翻页请求参数（与平台无关）。

    平台私有参数名（HubSpot 的 after、Reddit 的 after/before 等）由各 connector 映射。
    """

    limit: int
    after: str | None = None
    before: str | None = None


@dataclass(frozen=True, slots=True)
class Page:
    items: tuple[Mapping[str, Any], ...]
    next_token: str | None = None


@dataclass(frozen=True, slots=True)
class Emission:
    """
    归一化后的下游记录：每条 Emission 对应且仅对应一条上游 item。

    设计目标：
    - 下游 Sink/State 不依赖平台私有字段
    - fingerprint 稳定可重建，用于至少一次投递下的幂等去重
    """

    id: str
    summary: str
    ts: datetime
    ordering_key: OrderingKey
    payload: Mapping[str, Any]
    source_key: str = ""
    sub_resource: str = ""

    def fingerprint(self) -> str:
        """
        只使用 source_key/id 生成，summary/payload 变化不会导致重复投递。
        """
        stable = {"source_key": self.source_key, "id": self.id}
        payload = json.dumps(stable, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "ts": self.ts.isoformat(),
            "ordering_key": _key_to_json(self.ordering_key),
            "source_key": self.source_key,
            "sub_resource": self.sub_resource,
            "payload": dict(self.payload),
        }


def _key_to_json(value: OrderingKey) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def encode_cursor(value: OrderingKey | None) -> str | None:
    """
    cursor 落库格式：{"high_water": ..., "kind": "datetime|int|float|str"}。

    保留 kind，使 decode 后的类型与 ordering key 一致，边界比较才不会出错。
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        kind = "datetime"
        raw: Any = value.isoformat()
    elif isinstance(value, bool):
        raise TypeError("bool is not a valid ordering key")
    elif isinstance(value, int):
        kind, raw = "int", value
    elif isinstance(value, float):
        kind, raw = "float", value
    elif isinstance(value, str):
        kind, raw = "str", value
    else:
        raise TypeError(f"unsupported ordering key type: {type(value).__name__}")
    return json.dumps({"high_water": raw, "kind": kind}, ensure_ascii=False, separators=(",", ":"))


def decode_cursor(cursor: str | None) -> OrderingKey | None:
    if not cursor:
        return None
    try:
        obj = json.loads(cursor)
    except ValueError:
        return None
    if not isinstance(obj, dict) or "high_water" not in obj:
        return None

    raw = obj["high_water"]
    kind = obj.get("kind")
    if kind == "datetime" and isinstance(raw, str):
        return parse_rfc3339_datetime(raw)
    if kind == "int" and isinstance(raw, int):
        return raw
    if kind == "float" and isinstance(raw, (int, float)):
        return float(raw)
    if kind == "str" and isinstance(raw, str):
        return raw
    return None
