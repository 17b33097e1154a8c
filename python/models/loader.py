"""
Model loader - Thin wrapper around mlx-lm

Responsibilities:
- Load a model from HuggingFace or a trusted local path
- Return ModelHandle dataclass with model, tokenizer, and metadata
- Free model resources on unload
"""

import gc
import logging
import platform
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# HuggingFace Hub is used only to report the cached snapshot path
try:
    from huggingface_hub import snapshot_download
    HAS_HF_HUB = True
except ImportError:
    HAS_HF_HUB = False
    snapshot_download = None


# MLX imports are guarded because Apple MLX aborts on unsupported hosts
def _is_supported_mlx_platform() -> bool:
    """Check whether this host can safely import MLX."""
    system = platform.system().lower()
    if system not in {"darwin", "linux"}:
        return False
    machine = platform.machine().lower()
    return machine in {"arm64", "aarch64", "x86_64"}


load_text_model: Optional[Callable[..., Any]] = None
MLX_AVAILABLE = False
MLX_IMPORT_ERROR: Optional[str] = None

if _is_supported_mlx_platform():
    try:
        from mlx_lm import load as load_text_model

        MLX_AVAILABLE = True
    except Exception as exc:  # noqa: BLE001
        # Record reason for diagnostics while keeping runtime alive on failure.
        MLX_AVAILABLE = False
        MLX_IMPORT_ERROR = f"mlx-lm import failed: {exc}"
else:
    MLX_IMPORT_ERROR = "MLX runtime unsupported on this platform"

from errors import EngineLoadError
from config_loader import get_config

logger = logging.getLogger(__name__)


@dataclass
class ModelHandle:
    """Container for loaded model, tokenizer, and metadata"""

    model_id: str
    model: Any  # mlx model instance
    tokenizer: Any  # tokenizer instance
    metadata: Dict[str, Any]


def _resolve_context_length(options: Dict[str, Any], model_config: Any) -> int:
    """
    Resolve model's maximum context length

    Args:
        options: Load options (may contain explicit context_length)
        model_config: Model config object or dict

    Returns:
        Maximum context length in tokens
    """
    if "context_length" in options:
        return int(options["context_length"])

    for attr in (
        "max_position_embeddings",
        "n_ctx",
        "max_sequence_length",
        "context_length",
        "model_max_length",
    ):
        if isinstance(model_config, dict):
            value = model_config.get(attr)
        else:
            value = getattr(model_config, attr, None)
        if value:
            return int(value)

    return get_config().default_context_length


def resolve_local_path(model_id: str, local_path: str) -> str:
    """
    Resolve and vet a local model directory

    Args:
        model_id: Model identifier (for error reporting)
        local_path: User-supplied directory

    Returns:
        Absolute POSIX path of the model directory

    Raises:
        EngineLoadError: If the path is missing, not a directory, or outside
            the configured trusted directories
    """
    config = get_config()
    path = Path(local_path).expanduser().resolve(strict=False)

    # Sanitize path in errors to prevent information leakage
    if not path.exists():
        raise EngineLoadError(model_id, "Local path does not exist")
    if not path.is_dir():
        raise EngineLoadError(model_id, "Local path is not a directory")

    if config.trusted_model_directories:
        for trusted_dir in config.trusted_model_directories:
            trusted_path = Path(trusted_dir).expanduser().resolve()
            try:
                path.relative_to(trusted_path)
                break
            except ValueError:
                continue
        else:
            raise EngineLoadError(
                model_id,
                f"Path traversal detected: {path} is not within trusted directories: "
                f"{config.trusted_model_directories}",
            )

    return path.as_posix()


def load_model(model_id: str, options: Dict[str, Any]) -> ModelHandle:
    """
    Load a model from HuggingFace or local path (blocking)

    Args:
        model_id: Model identifier
        options: Load options
            - local_path: Local directory path (overrides model_id)
            - revision: Model revision/branch
            - context_length: Override detected context length
            - tokenizer_config: Additional tokenizer config
            - load_kwargs: Additional kwargs for mlx_lm.load()

    Returns:
        ModelHandle with model, tokenizer, and metadata

    Raises:
        EngineLoadError: If loading fails
    """
    if not MLX_AVAILABLE or load_text_model is None:
        reason = MLX_IMPORT_ERROR or "MLX not available - install mlx-lm"
        raise EngineLoadError(model_id, reason)

    # MLX functions don't accept None as **kwargs values
    load_kwargs = {k: v for k, v in (options.get("load_kwargs") or {}).items() if v is not None}
    if options.get("tokenizer_config") is not None:
        load_kwargs["tokenizer_config"] = options["tokenizer_config"]
    if options.get("revision"):
        load_kwargs.setdefault("revision", options["revision"])

    try:
        if options.get("local_path"):
            resolved_id = resolve_local_path(model_id, options["local_path"])
        else:
            resolved_id = model_id

        started_at = time.perf_counter()
        model, tokenizer, model_config = load_text_model(
            resolved_id, return_config=True, **load_kwargs
        )
        if model is None or tokenizer is None:
            raise RuntimeError("Loader returned empty model/tokenizer")

        cached_model_path = None
        if options.get("local_path"):
            cached_model_path = resolved_id
        elif HAS_HF_HUB and snapshot_download is not None:
            try:
                # local_files_only avoids re-downloading; returns cached snapshot dir
                cached_model_path = snapshot_download(
                    model_id,
                    revision=options.get("revision", "main"),
                    local_files_only=True,
                )
            except Exception as e:
                logger.warning(f"Could not determine cached model path for {model_id}: {e}")

        try:
            from mlx.utils import tree_flatten

            params = tree_flatten(model.parameters())
            dtype = str(params[0][1].dtype)
            parameter_count = sum(int(p.size) for _, p in params)
        except (ImportError, IndexError, AttributeError, TypeError):
            dtype = "unknown"
            parameter_count = None

        metadata = {
            "model_id": model_id,
            "dtype": dtype,
            "parameter_count": parameter_count,
            "context_length": _resolve_context_length(options, model_config),
            "revision": options.get("revision"),
            "loaded_at": time.time(),
            "load_time_s": time.perf_counter() - started_at,
            "config_model_type": (
                model_config.get("model_type", "unknown")
                if isinstance(model_config, dict)
                else getattr(model_config, "model_type", "unknown")
            ),
            "cached_path": cached_model_path,
        }

        return ModelHandle(
            model_id=model_id,
            model=model,
            tokenizer=tokenizer,
            metadata=metadata,
        )

    except EngineLoadError:
        raise
    except FileNotFoundError as exc:
        raise EngineLoadError(model_id, f"Model path not found: {exc}") from exc
    except RuntimeError as exc:
        raise EngineLoadError(model_id, f"Backend failure: {exc}") from exc
    except Exception as exc:
        raise EngineLoadError(model_id, f"Unexpected loader error: {exc}") from exc


def unload_model(handle: ModelHandle) -> None:
    """
    Unload a model and free resources

    Args:
        handle: ModelHandle to unload
    """
    try:
        handle.model = None
        handle.tokenizer = None
    finally:
        gc.collect()
