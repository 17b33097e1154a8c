"""
Engine handle - the inference runtime seen by the service

The service only depends on the EngineHandle protocol:
- load(): completes or fails exactly once
- complete(request): text in, text out
- embed(text): text in, vector out (or None)

MLXEngine implements it on top of mlx-lm. All blocking MLX work is moved
off the event loop with asyncio.to_thread, and every such call holds the
engine semaphore: Metal does not tolerate concurrent work on one model, so an
embedding never runs while a completion is generating.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from config_loader import get_config
from errors import EngineInvocationError, EngineLoadError
from models import generator, loader
from validators import validate_model_id

logger = logging.getLogger(__name__)


class EngineHandle(Protocol):
    """Interface the inference service drives"""

    model_id: str

    async def load(self) -> None:
        ...

    async def complete(self, request: Any) -> str:
        ...

    async def embed(self, text: str) -> Optional[Sequence[float]]:
        ...


class MLXEngine:
    """EngineHandle backed by an mlx-lm model"""

    def __init__(self, model_id: str, options: Optional[Dict[str, Any]] = None,
                 concurrency_limit: int = 1):
        self.model_id = model_id
        self.options: Dict[str, Any] = dict(options or {})
        self.concurrency_limit = concurrency_limit
        self.handle: Optional[loader.ModelHandle] = None
        self._mlx_semaphore: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_config(cls, config=None) -> "MLXEngine":
        """Build an engine from the `model` and `mlx` sections of the runtime config"""
        config = config or get_config()
        model_id = validate_model_id(config.model_id)
        return cls(
            model_id,
            {
                "local_path": config.local_path,
                "revision": config.revision,
                "load_kwargs": config.load_kwargs,
            },
            concurrency_limit=config.mlx_concurrency_limit,
        )

    def _get_mlx_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._mlx_semaphore is None:
            self._mlx_semaphore = asyncio.Semaphore(self.concurrency_limit)
        return self._mlx_semaphore

    async def _run_mlx(self, func, *args):
        """Run a blocking MLX call in a worker thread while holding the semaphore"""
        async with self._get_mlx_semaphore():
            return await asyncio.to_thread(func, *args)

    async def load(self) -> None:
        """Load model weights in a worker thread"""
        if self.handle is not None:
            return
        try:
            self.handle = await self._run_mlx(loader.load_model, self.model_id, self.options)
        except EngineLoadError:
            raise
        except Exception as exc:
            raise EngineLoadError(self.model_id, f"Unexpected error: {exc}") from exc

        logger.info(
            f"Loaded {self.model_id} (dtype={self.handle.metadata.get('dtype')}, "
            f"context_length={self.handle.metadata.get('context_length')})"
        )

    def _require_handle(self) -> loader.ModelHandle:
        if self.handle is None:
            raise EngineInvocationError(self.model_id, "Model not initialized")
        return self.handle

    async def complete(self, request: Any) -> str:
        handle = self._require_handle()
        return await self._run_mlx(generator.generate_text, handle, request)

    async def embed(self, text: str) -> Optional[List[float]]:
        handle = self._require_handle()
        config = get_config()
        return await self._run_mlx(
            generator.compute_embedding,
            handle,
            text,
            config.embedding_pooling,
            config.embedding_normalize,
        )

    def unload(self) -> None:
        if self.handle is not None:
            loader.unload_model(self.handle)
            self.handle = None
            logger.info(f"Unloaded {self.model_id}")

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self.handle.metadata) if self.handle is not None else {}
