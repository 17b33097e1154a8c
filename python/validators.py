"""
Input validation for JSON-RPC methods

Centralized validation logic to prevent invalid parameters and DoS attacks.
Only the transport layer validates; the service passes parameters through.
"""

from __future__ import annotations

import re
from typing import Any, Dict

from config_loader import get_config


def validate_model_id(model_id: Any) -> str:
    """
    Validate model_id parameter

    Args:
        model_id: Model ID to validate

    Returns:
        Validated model_id string

    Raises:
        ValueError: If model_id is invalid
    """
    if not model_id:
        raise ValueError("model_id is required")

    if not isinstance(model_id, str):
        raise ValueError(f"model_id must be a string, got {type(model_id).__name__}")

    if len(model_id) > 512:
        raise ValueError(f"model_id too long ({len(model_id)} chars, max 512)")

    # Allow URI schemes (hf://, file://) and revision syntax (@); disallow '..'
    if '..' in model_id or not re.match(r'^[a-zA-Z0-9_\-./@:]+$', model_id):
        raise ValueError("model_id contains invalid characters or path traversal attempts")

    return model_id


def validate_text_input(text: Any, param_name: str = "text", max_length: int = 1_048_576) -> str:
    """
    Validate text input parameters

    Args:
        text: Text to validate
        param_name: Parameter name for error messages
        max_length: Maximum allowed length (default 1MB)

    Returns:
        Validated text string

    Raises:
        ValueError: If text is invalid
    """
    if not isinstance(text, str):
        raise ValueError(f"{param_name} must be a string, got {type(text).__name__}")

    if len(text) > max_length:
        raise ValueError(f"{param_name} too long ({len(text)} chars, max {max_length})")

    return text


def _validate_number(params: Dict[str, Any], name: str, low: float, high: float) -> None:
    value = params[name]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be numeric, got {type(value).__name__}")
    if value < low or value > high:
        raise ValueError(f"{name} must be in [{low}, {high}], got {value}")


def validate_completion_params(params: Dict[str, Any]) -> None:
    """
    Validate completion parameters (complete / complete_text)

    Args:
        params: Completion parameters to validate

    Raises:
        ValueError: If parameters are invalid
    """
    config = get_config()

    if "context" not in params:
        raise ValueError("context is required")
    validate_text_input(params["context"], "context", max_length=config.max_context_chars)

    # Validate max_tokens (Security: prevent DoS attacks)
    if "max_tokens" in params:
        max_tokens = params["max_tokens"]
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
            raise ValueError(f"max_tokens must be an integer, got {type(max_tokens).__name__}")
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be positive, got {max_tokens}")

        max_allowed = config.max_generation_tokens
        if max_tokens > max_allowed:
            raise ValueError(f"max_tokens too large ({max_tokens}, max {max_allowed})")

    if "temperature" in params:
        _validate_number(params, "temperature", 0.0, config.max_temperature)

    for penalty_name in ["presence_penalty", "frequency_penalty"]:
        if penalty_name in params:
            _validate_number(params, penalty_name, -config.max_penalty, config.max_penalty)

    if "stop" in params:
        stop = params["stop"]
        if stop is not None:
            if not isinstance(stop, list):
                raise ValueError(f"stop must be a list, got {type(stop).__name__}")
            if len(stop) > config.max_stop_sequences:
                raise ValueError(f"too many stop sequences ({len(stop)}, max {config.max_stop_sequences})")
            for idx, seq in enumerate(stop):
                if not isinstance(seq, str):
                    raise ValueError(f"stop[{idx}] must be a string")
                if not seq:
                    raise ValueError(f"stop[{idx}] must not be empty")
                if len(seq) > 100:
                    raise ValueError(f"stop[{idx}] too long ({len(seq)} chars, max 100)")


def validate_embedding_params(params: Dict[str, Any]) -> None:
    """Validate embed parameters."""
    if "input" not in params:
        raise ValueError("input is required")
    validate_text_input(params["input"], "input", max_length=get_config().max_context_chars)
