"""
Custom exception types for the inference queue service

Provides typed exceptions for consistent JSON-RPC error mapping.
All domain-specific errors should inherit from these base types.
"""

from typing import Optional


class ServiceError(Exception):
    """Base exception for all inference service errors"""

    def __init__(self, message: str, model_id: Optional[str] = None):
        self.message = message
        self.model_id = model_id
        super().__init__(message)


class EngineNotReady(ServiceError):
    """Raised when the engine is probed before it has finished loading"""

    def __init__(self, model_id: str):
        super().__init__(f"Engine not ready: {model_id}", model_id)


class EngineLoadError(ServiceError):
    """Raised when engine loading fails (permanent for the process)"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to load engine {model_id}: {reason}", model_id)
        self.reason = reason


class EngineInvocationError(ServiceError):
    """Raised when a completion or embedding call fails inside the engine"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Inference failed for {model_id}: {reason}", model_id)
        self.reason = reason


class ResponseParseError(ServiceError):
    """Raised when structured output cannot be extracted or parsed as JSON"""

    def __init__(self, model_id: str, reason: str, raw_output: Optional[str] = None):
        super().__init__(f"Response parse error for {model_id}: {reason}", model_id)
        self.reason = reason
        self.raw_output = raw_output


# JSON-RPC error code mapping
# Codes are shared with the JSON-RPC clients; keep them stable.
ERROR_CODE_MAP = {
    EngineLoadError: -32001,
    EngineInvocationError: -32002,
    ResponseParseError: -32004,
    EngineNotReady: -32005,
    ServiceError: -32099,  # Generic service error
}
