from .base import Sink
from .jsonl import JsonlSink
from .webhook import WebhookSink

__all__ = [
    "JsonlSink",
    "Sink",
    "WebhookSink",
]
