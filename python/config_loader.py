"""
Python Configuration Loader

Loads configuration from YAML files to eliminate hardcoded values
"""

import os
import threading
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


class Config:
    """Runtime configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Python Bridge
        py_bridge = config_dict.get("python_bridge", {})
        self.max_buffer_size = py_bridge.get("max_buffer_size", 1_048_576)

        # Model
        model = config_dict.get("model", {})
        self.model_id = model.get("model_id")
        self.local_path = model.get("local_path")
        self.revision = model.get("revision", "main")
        self.load_kwargs = model.get("load_kwargs", {}) or {}
        self.default_context_length = model.get("default_context_length", 8192)
        self.default_max_tokens = model.get("default_max_tokens", 512)

        # Security settings
        self.trusted_model_directories = model.get("trusted_model_directories")
        self.max_generation_tokens = model.get("max_generation_tokens", 4096)
        self.max_temperature = model.get("max_temperature", 2.0)
        self.max_penalty = model.get("max_penalty", 2.0)
        self.max_stop_sequences = model.get("max_stop_sequences", 16)
        self.max_context_chars = model.get("max_context_chars", 1_048_576)

        # Embedding
        embedding = config_dict.get("embedding", {})
        self.embedding_pooling = embedding.get("pooling", "mean")
        self.embedding_normalize = embedding.get("normalize", False)

        # MLX Concurrency
        # Default: 1 (Metal GPU limitation: one MLX call per model at a time)
        mlx_config = config_dict.get("mlx", {})
        self.mlx_concurrency_limit = mlx_config.get("concurrency_limit", 1)

        # Development
        dev = config_dict.get("development", {})
        self.debug = dev.get("debug", False)

        # Telemetry
        telemetry = config_dict.get("telemetry", {})
        self.telemetry_enabled = telemetry.get("enabled", True)
        self.telemetry_sampling_rate = telemetry.get("sampling_rate", 1.0)

        # Logging
        log_cfg = config_dict.get("logging", {})
        self.log_level = log_cfg.get("level", "INFO")
        self.log_format = log_cfg.get("format", "[%(asctime)s] [%(levelname)s] %(message)s")
        self.log_datefmt = log_cfg.get("datefmt", "%Y-%m-%d %H:%M:%S")

    def validate(self) -> None:
        """
        Validate configuration values

        Catches invalid config values at startup instead of runtime failures

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.max_buffer_size < 1024:
            raise ValueError(f"max_buffer_size must be >= 1024 bytes, got {self.max_buffer_size}")

        if self.max_temperature < 0 or self.max_temperature > 10.0:
            raise ValueError(f"max_temperature must be in range [0, 10], got {self.max_temperature}")

        if self.max_penalty < 0:
            raise ValueError(f"max_penalty must be >= 0, got {self.max_penalty}")

        if self.max_generation_tokens < 1:
            raise ValueError(f"max_generation_tokens must be >= 1, got {self.max_generation_tokens}")

        if self.max_stop_sequences < 0:
            raise ValueError(f"max_stop_sequences must be >= 0, got {self.max_stop_sequences}")

        if self.mlx_concurrency_limit < 1 or self.mlx_concurrency_limit > 10:
            raise ValueError(f"mlx_concurrency_limit must be in range [1, 10], got {self.mlx_concurrency_limit}")

        if self.telemetry_sampling_rate < 0 or self.telemetry_sampling_rate > 1.0:
            raise ValueError(f"telemetry_sampling_rate must be in range [0, 1], got {self.telemetry_sampling_rate}")

        if self.embedding_pooling not in ["mean", "last"]:
            raise ValueError(f"embedding.pooling must be 'mean' or 'last', got {self.embedding_pooling}")

        if self.log_level.upper() not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError(f"logging.level is not a valid level name, got {self.log_level}")


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to project_root/config/runtime.yaml)
        environment: Environment name (production/development/test)

    Returns:
        Config instance

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If config file is invalid
    """
    # Find project root (look for config/ directory)
    if config_path is None:
        current = Path(__file__).parent
        for _ in range(5):  # Search up to 5 levels
            config_dir = current / "config"
            if config_dir.exists():
                config_path = str(config_dir / "runtime.yaml")
                break
            parent = current.parent
            if parent == current:
                break
            current = parent

        if config_path is None:
            # Fallback to relative path
            config_path = str(Path(__file__).parent.parent / "config" / "runtime.yaml")

    try:
        with open(config_path, "r") as f:
            base_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    env = environment or os.getenv("PYTHON_ENV") or "development"

    # Apply environment-specific overrides
    final_config = base_config
    if "environments" in base_config and env in base_config["environments"]:
        env_overrides = base_config["environments"][env]
        final_config = deep_merge(base_config, env_overrides)

    if "environments" in final_config:
        final_config = {k: v for k, v in final_config.items() if k != "environments"}

    config = Config(final_config)
    config.validate()
    return config


# Global config instance
_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Initialize global configuration (thread-safe)"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Get global configuration (lazy initialization)

    Uses double-checked locking so concurrent first callers
    do not load the file twice.
    """
    global _global_config

    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config
