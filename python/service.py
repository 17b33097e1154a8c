"""
Inference service - single-flight request serialization over one engine

Callers submit completion requests at any time, even before the engine has
loaded. Requests are queued in submission order and drained one at a time:
at most one engine completion call is ever outstanding, and engine calls
happen in exactly the order requests were submitted.

    submit_completion / submit_text ──► RequestQueue ──► _drain (IDLE → DRAINING)
                                                              │
                                              engine.complete(request)
                                                              │
                                                   decode_completion
                                                              │
                                               future resolved / rejected

All state lives on one asyncio event loop. The IDLE → DRAINING transition is
checked and set without an intervening await, so concurrent triggers cannot
start a second drain loop.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from adapters.completion_decoder import decode_completion
from errors import EngineLoadError, EngineNotReady
from models.engine import EngineHandle
from models.request_queue import QueuedRequest, RequestMode, RequestQueue
from telemetry import RuntimeTelemetry

logger = logging.getLogger(__name__)


class DrainState(Enum):
    IDLE = "idle"
    DRAINING = "draining"


class InferenceService:
    """
    Serializes completion requests against a single engine

    The process composer owns the instance and injects the engine; there is
    no module-level singleton.
    """

    def __init__(self, engine: EngineHandle, telemetry: Optional[RuntimeTelemetry] = None):
        self.engine = engine
        self.telemetry = telemetry
        self.queue = RequestQueue()
        self.state = DrainState.IDLE
        self._ready = False
        self._load_error: Optional[EngineLoadError] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._engine_calls_in_flight = 0

    @property
    def model_id(self) -> str:
        return getattr(self.engine, "model_id", "n/a")

    # ------------------------------------------------------------------
    # Readiness gate
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._ready

    @property
    def load_error(self) -> Optional[EngineLoadError]:
        return self._load_error

    def ensure_ready(self) -> None:
        """
        Raise unless the engine has loaded

        Raises:
            EngineLoadError: Loading failed (permanent)
            EngineNotReady: Loading has not finished yet
        """
        if self._ready:
            return
        if self._load_error is not None:
            raise self._load_error
        raise EngineNotReady(self.model_id)

    async def initialize(self) -> None:
        """
        Load the engine and open the gate

        On success the service becomes ready and drains anything queued so far.
        On failure the service stays not-ready for good: the error is recorded
        and re-raised, and queued requests are left pending. There is no retry;
        calling again re-raises the recorded error.

        Raises:
            EngineLoadError: If the engine fails to load
        """
        if self._ready:
            return
        if self._load_error is not None:
            raise self._load_error

        logger.info(f"Initializing engine {self.model_id}")
        try:
            await self.engine.load()
        except Exception as exc:
            if isinstance(exc, EngineLoadError):
                error = exc
            else:
                error = EngineLoadError(self.model_id, str(exc))
            self._load_error = error
            logger.error(
                f"Engine {self.model_id} failed to load; "
                f"{len(self.queue)} queued request(s) will not be processed: {error}"
            )
            if self.telemetry:
                self.telemetry.record_error(type(error).__name__)
            if error is exc:
                raise
            raise error from exc

        self._ready = True
        logger.info(f"Engine {self.model_id} ready ({len(self.queue)} request(s) waiting)")
        self._schedule_drain()

    # ------------------------------------------------------------------
    # Request queue
    # ------------------------------------------------------------------

    def submit_completion(
        self,
        context: str,
        temperature: float,
        stop: Sequence[str],
        frequency_penalty: float,
        presence_penalty: float,
        max_tokens: int,
    ) -> asyncio.Future:
        """
        Queue a structured (JSON) completion

        The request is enqueued before this returns. The returned future
        resolves to the parsed JSON value, or raises ResponseParseError /
        the engine's error.
        """
        return self._enqueue(
            RequestMode.STRUCTURED,
            context, temperature, stop, frequency_penalty, presence_penalty, max_tokens,
        )

    def submit_text(
        self,
        context: str,
        temperature: float,
        stop: Sequence[str],
        frequency_penalty: float,
        presence_penalty: float,
        max_tokens: int,
    ) -> asyncio.Future:
        """Queue a plain-text completion; the future resolves to the raw engine text."""
        return self._enqueue(
            RequestMode.TEXT,
            context, temperature, stop, frequency_penalty, presence_penalty, max_tokens,
        )

    def _enqueue(
        self,
        mode: RequestMode,
        context: str,
        temperature: float,
        stop: Sequence[str],
        frequency_penalty: float,
        presence_penalty: float,
        max_tokens: int,
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        request = QueuedRequest(
            context=context,
            temperature=temperature,
            stop=list(stop),
            frequency_penalty=frequency_penalty,
            presence_penalty=presence_penalty,
            max_tokens=max_tokens,
            mode=mode,
            future=loop.create_future(),
        )
        self.queue.put(request)
        self._schedule_drain()
        return request.future

    # ------------------------------------------------------------------
    # Single-flight processor
    # ------------------------------------------------------------------

    def _schedule_drain(self) -> None:
        """Start a drain pass if ready, idle and there is work; otherwise no-op."""
        if not self._ready or self.state is not DrainState.IDLE or self.queue.empty():
            return

        self.state = DrainState.DRAINING
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        logger.debug(f"Drain started ({len(self.queue)} queued)")
        try:
            while True:
                request = self.queue.pop()
                if request is None:
                    break
                await self._process(request)
        finally:
            self.state = DrainState.IDLE
            logger.debug("Drain finished")

    async def _process(self, request: QueuedRequest) -> None:
        """Run one request through the engine and decoder, then settle its future."""
        started_at = time.monotonic()
        queue_wait_ms = (started_at - request.enqueued_at) * 1000

        try:
            self._engine_calls_in_flight += 1
            try:
                raw = await self.engine.complete(request)
            finally:
                self._engine_calls_in_flight -= 1
            result = decode_completion(raw, request.mode, self.model_id)
        except Exception as exc:
            logger.warning(
                f"Request #{request.sequence} ({request.mode.value}) failed: "
                f"{type(exc).__name__}: {exc}"
            )
            if self.telemetry:
                self.telemetry.record_error(type(exc).__name__)
            request.reject(exc)
            return
        except BaseException as exc:
            # The drain is unwinding; the popped request must still settle
            if isinstance(exc, asyncio.CancelledError):
                request.cancel()
            else:
                request.reject(exc)
            raise

        if self.telemetry:
            self.telemetry.record_completion(
                (time.monotonic() - started_at) * 1000, result.kind, queue_wait_ms
            )
        request.resolve(result.value)

    async def wait_idle(self) -> None:
        """Wait until the current drain pass (if any) has finished."""
        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Embedding accessor
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> Optional[List[float]]:
        """
        Embed text directly, bypassing the request queue

        Not ordered relative to queued completions; the call may overlap a
        completion at the engine.

        Returns:
            The engine vector as a list, or None when the engine has nothing usable

        Raises:
            EngineNotReady / EngineLoadError: Engine not loaded
        """
        self.ensure_ready()

        started_at = time.monotonic()
        try:
            vector = await self.engine.embed(text)
        except Exception as exc:
            if self.telemetry:
                self.telemetry.record_error(type(exc).__name__)
            raise

        if self.telemetry:
            self.telemetry.record_embedding((time.monotonic() - started_at) * 1000)
        if vector is None:
            return None
        return list(vector)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "ready": self._ready,
            "load_error": self._load_error.message if self._load_error else None,
            "state": self.state.value,
            "in_flight": self._engine_calls_in_flight,
            "queue": self.queue.get_metrics(),
        }
