"""
Incremental Poller (incpoll)

以轮询方式从多个 SaaS 平台（HubSpot / Reddit 等）的分页 REST 接口拉取增量记录：
按 cursor 截止翻页、过滤已输出的 item、按时间从旧到新归一为 Emission 投递到下游，
并在整轮投递成功后才推进 cursor（至少一次投递 + 指纹去重）。
"""

from .errors import (
    AuthError,
    PartialSubResourceFailure,
    PollCancelled,
    PollCycleFailed,
    PollerError,
    TransientHttpError,
    ValidationError,
)
from .models import Emission, Page, PageParams
from .poller import IncrementalPoller, PollerSettings, PollOutcome
from .retry import RetryPolicy

__all__ = [
    "AuthError",
    "Emission",
    "IncrementalPoller",
    "Page",
    "PageParams",
    "PartialSubResourceFailure",
    "PollCancelled",
    "PollCycleFailed",
    "PollOutcome",
    "PollerError",
    "PollerSettings",
    "RetryPolicy",
    "TransientHttpError",
    "ValidationError",
]
