"""
Generator module - Blocking text generation and embedding with MLX

Responsibilities:
- Map opaque request parameters onto mlx-lm sampler / logits processors
- Run one completion to the end and return its text
- Pool backbone hidden states into an embedding vector

Everything here blocks; callers run it in a worker thread.
"""

import logging
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from models.loader import ModelHandle, MLX_AVAILABLE, MLX_IMPORT_ERROR

mlx_stream_generate = None  # type: ignore[assignment]
make_sampler = None  # type: ignore[assignment]
mx = None  # type: ignore[assignment]
MLX_GENERATE_AVAILABLE = False
MLX_GENERATE_ERROR: Optional[str] = None

if MLX_AVAILABLE:
    try:
        import mlx.core as mx  # type: ignore[no-redef]
        from mlx_lm import stream_generate as mlx_stream_generate  # type: ignore[assignment]
        from mlx_lm.sample_utils import make_sampler  # type: ignore[assignment]

        MLX_GENERATE_AVAILABLE = True
    except Exception as exc:  # noqa: BLE001
        MLX_GENERATE_AVAILABLE = False
        MLX_GENERATE_ERROR = f"mlx-lm stream_generate import failed: {exc}"
else:
    MLX_GENERATE_ERROR = MLX_IMPORT_ERROR or "mlx-lm not available"

from errors import EngineInvocationError

logger = logging.getLogger(__name__)


def truncate_at_stop(text: str, stop: Sequence[str]) -> Optional[str]:
    """
    Cut text at the earliest stop sequence

    Returns:
        The text before the first stop marker, or None if no marker occurs
    """
    cut = -1
    for marker in stop:
        if not marker:
            continue
        idx = text.find(marker)
        if idx != -1 and (cut == -1 or idx < cut):
            cut = idx
    if cut == -1:
        return None
    return text[:cut]


def penalty_vector(token_ids: Sequence[int], vocab_size: int,
                   frequency_penalty: float, presence_penalty: float) -> np.ndarray:
    """
    Build the additive logit penalty for already-seen tokens

    penalty[t] = count(t) * frequency_penalty + (count(t) > 0) * presence_penalty
    """
    ids = np.asarray(token_ids, dtype=np.int64).reshape(-1)
    ids = ids[(ids >= 0) & (ids < vocab_size)]
    counts = np.bincount(ids, minlength=vocab_size).astype(np.float32)
    return counts * np.float32(frequency_penalty) + (counts > 0).astype(np.float32) * np.float32(presence_penalty)


def make_penalty_processor(frequency_penalty: float, presence_penalty: float) -> Optional[Callable]:
    """Logits processor applying frequency/presence penalties, or None when both are zero."""
    if not frequency_penalty and not presence_penalty:
        return None

    def processor(tokens: Any, logits: Any) -> Any:
        if tokens is None or tokens.size == 0:
            return logits
        penalty = penalty_vector(
            np.array(tokens), logits.shape[-1], frequency_penalty, presence_penalty
        )
        return logits - mx.array(penalty)

    return processor


def build_generation_kwargs(request: Any) -> dict:
    """
    Map request parameters to mlx_lm.stream_generate kwargs

    Args:
        request: QueuedRequest (or any object with the same sampling fields)

    Returns:
        Clean kwargs dict for mlx_lm.stream_generate()
    """
    kwargs = {"max_tokens": request.max_tokens}

    if MLX_GENERATE_AVAILABLE:
        kwargs["sampler"] = make_sampler(temp=request.temperature)

        processor = make_penalty_processor(request.frequency_penalty, request.presence_penalty)
        if processor is not None:
            kwargs["logits_processors"] = [processor]

    return kwargs


def generate_text(handle: ModelHandle, request: Any) -> str:
    """
    Run one completion to the end (blocking)

    Args:
        handle: Loaded ModelHandle
        request: QueuedRequest carrying context and sampling parameters

    Returns:
        Generated text, cut before the first stop sequence

    Raises:
        EngineInvocationError: If generation fails
    """
    if not MLX_GENERATE_AVAILABLE or mlx_stream_generate is None:
        reason = MLX_GENERATE_ERROR or "mlx-lm not available - install mlx-lm"
        raise EngineInvocationError(handle.model_id, reason)

    generation_kwargs = build_generation_kwargs(request)
    stop = list(request.stop or [])
    text = ""

    try:
        for chunk in mlx_stream_generate(
            handle.model, handle.tokenizer, request.context, **generation_kwargs
        ):
            text += chunk.text
            if stop:
                truncated = truncate_at_stop(text, stop)
                if truncated is not None:
                    return truncated
    except EngineInvocationError:
        raise
    except Exception as exc:
        raise EngineInvocationError(handle.model_id, f"Unexpected generation error: {exc}") from exc

    return text


def _backbone(model: Any) -> Any:
    """Return the hidden-state network under the LM head, if the model exposes one"""
    for attr in ("model", "backbone", "language_model"):
        inner = getattr(model, attr, None)
        if inner is not None and callable(inner):
            return inner
    return None


def compute_embedding(handle: ModelHandle, text: str,
                      pooling: str = "mean", normalize: bool = False) -> Optional[List[float]]:
    """
    Embed text by pooling backbone hidden states (blocking)

    Args:
        handle: Loaded ModelHandle
        text: Input text
        pooling: "mean" over all positions or "last" position
        normalize: L2-normalize the pooled vector

    Returns:
        List of floats, or None when the model has no usable backbone or the
        input tokenizes to nothing

    Raises:
        EngineInvocationError: If the forward pass fails
    """
    if not MLX_GENERATE_AVAILABLE or mx is None:
        reason = MLX_GENERATE_ERROR or "mlx not available - install mlx-lm"
        raise EngineInvocationError(handle.model_id, reason)

    backbone = _backbone(handle.model)
    if backbone is None:
        logger.warning(f"Model {handle.model_id} exposes no backbone; embedding unavailable")
        return None

    try:
        tokens = handle.tokenizer.encode(text)
        if not tokens:
            return None

        hidden = backbone(mx.array([tokens]))
        if isinstance(hidden, tuple):
            hidden = hidden[0]

        if pooling == "last":
            pooled = hidden[0, -1]
        else:
            pooled = mx.mean(hidden[0], axis=0)

        vector = np.array(pooled.astype(mx.float32))
    except Exception as exc:
        raise EngineInvocationError(handle.model_id, f"Embedding failed: {exc}") from exc

    if normalize:
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector = vector / norm

    return vector.tolist()
