"""
FIFO Request Queue for single-flight inference

Holds pending completion requests in strict submission order. Each entry
carries its own one-shot completion handle (an asyncio.Future) which the
single-flight processor resolves exactly once.

Architecture:
    submit_completion / submit_text → append to tail
                                          ↓
                          single-flight processor pops the head
                                          ↓
                     engine call → decode → future resolved or rejected

There are no priorities, no capacity limit and no cancellation: a request
stays queued until drained or the process exits.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class RequestMode(Enum):
    """Selects the decoding path applied to the engine output"""
    STRUCTURED = "structured"  # Decode as JSON (fenced or bare)
    TEXT = "text"              # Return raw text unmodified


@dataclass
class QueuedRequest:
    """
    One pending unit of work

    Sampling fields are opaque: they are handed to the engine unchanged.
    """
    context: str
    temperature: float
    stop: List[str]
    frequency_penalty: float
    presence_penalty: float
    max_tokens: int
    mode: RequestMode
    future: asyncio.Future = field(repr=False, compare=False)
    sequence: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)

    def resolve(self, value: Any) -> None:
        """Deliver the success value unless the handle is already settled"""
        if not self.future.done():
            self.future.set_result(value)

    def reject(self, error: BaseException) -> None:
        """Deliver the failure unless the handle is already settled"""
        if not self.future.done():
            self.future.set_exception(error)

    def cancel(self) -> None:
        """Cancel the handle unless it is already settled"""
        if not self.future.done():
            self.future.cancel()


class RequestQueue:
    """
    Unbounded FIFO queue of QueuedRequest entries

    Not thread-safe: it is mutated only from the event loop thread, by the
    enqueue operations and by the drain loop.

    Example:
        queue = RequestQueue()
        queue.put(request)
        head = queue.pop()   # oldest request, or None when empty
    """

    def __init__(self):
        self._items: Deque[QueuedRequest] = deque()

        # Metrics
        self.total_enqueued = 0
        self.total_dequeued = 0
        self.mode_counts = {mode: 0 for mode in RequestMode}

    def put(self, request: QueuedRequest) -> None:
        """Append a request to the tail and stamp its submission sequence"""
        self.total_enqueued += 1
        request.sequence = self.total_enqueued
        self._items.append(request)
        self.mode_counts[request.mode] += 1

        logger.debug(
            f"Enqueued request #{request.sequence} (mode={request.mode.value}, "
            f"queue_size={len(self._items)})"
        )

    def pop(self) -> Optional[QueuedRequest]:
        """
        Remove and return the oldest request

        Returns:
            The head of the queue, or None if the queue is empty
        """
        if not self._items:
            return None

        request = self._items.popleft()
        self.total_dequeued += 1

        logger.debug(
            f"Dequeued request #{request.sequence} (queue_size={len(self._items)}, "
            f"waited={(time.monotonic() - request.enqueued_at) * 1000:.1f}ms)"
        )
        return request

    def qsize(self) -> int:
        return len(self._items)

    def empty(self) -> bool:
        return not self._items

    def __len__(self) -> int:
        return len(self._items)

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get queue metrics for monitoring

        Returns:
            Dictionary with queue statistics
        """
        oldest_wait_ms = 0.0
        if self._items:
            oldest_wait_ms = (time.monotonic() - self._items[0].enqueued_at) * 1000

        return {
            "current_size": len(self._items),
            "total_enqueued": self.total_enqueued,
            "total_dequeued": self.total_dequeued,
            "mode_distribution": {mode.value: count for mode, count in self.mode_counts.items()},
            "oldest_wait_ms": oldest_wait_ms,
        }


__all__ = [
    "RequestMode",
    "QueuedRequest",
    "RequestQueue",
]
