import os
import sys

import pytest


PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_DIR = os.path.join(PROJECT_ROOT, "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


from incpoll.retry import RetryPolicy  # noqa: E402


@pytest.fixture()
def no_backoff() -> RetryPolicy:
    """重试但不等待，避免测试里真实 sleep。"""
    return RetryPolicy(max_attempts=4, base_backoff_seconds=0.0, jitter_ratio=0.0)
