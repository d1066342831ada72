from __future__ import annotations

import json
import os
from dataclasses import dataclass

from ..models import Emission
from .base import Sink


@dataclass(slots=True)
class JsonlSink(Sink):
    """
    追加写 JSON Lines 文件：每条 Emission 一行，写入后 flush + fsync 再返回。
    """

    path: str

    def channel(self) -> str:
        return "jsonl"

    def emit(self, emission: Emission) -> None:
        line = json.dumps(emission.to_json_dict(), ensure_ascii=False, separators=(",", ":"), default=str)
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
