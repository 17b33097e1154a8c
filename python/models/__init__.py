"""Engine, loader and request queue modules."""

from .request_queue import QueuedRequest, RequestMode, RequestQueue

__all__ = [
    "QueuedRequest",
    "RequestMode",
    "RequestQueue",
]
