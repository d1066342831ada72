from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field

from ..http_utils import HttpClient
from ..models import Emission
from ..retry import RetryPolicy, retry_call
from .base import Sink


@dataclass(slots=True)
class WebhookSink(Sink):
    """
    将 Emission 以 JSON POST 到宿主 webhook。

    说明：
    - 载荷为 Emission.to_json_dict()，附加 deliveryId（uuid）与 sentAt（毫秒时间戳）
    - 非 2xx 由 HttpClient 映射为分类异常；408/429/5xx 按 retry 策略重试
    - token 非空时通过 Authorization: Bearer 头携带
    """

    url: str
    http: HttpClient
    token: str | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cancel: threading.Event | None = None

    def channel(self) -> str:
        return "webhook"

    def emit(self, emission: Emission) -> None:
        payload = self._build_payload(emission)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        retry_call(
            lambda: self.http.post_json(self.url, payload, headers=headers),
            self.retry,
            cancel=self.cancel,
            describe=f"webhook emit {emission.id}",
        )

    def _build_payload(self, emission: Emission) -> dict[str, object]:
        payload: dict[str, object] = emission.to_json_dict()
        payload["deliveryId"] = uuid.uuid4().hex
        payload["sentAt"] = int(time.time() * 1000)
        return payload
