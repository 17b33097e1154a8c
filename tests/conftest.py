"""
Pytest configuration for mlx-queue-serving tests

Sets up Python path to allow imports from python/ directory and provides a
scripted engine so the service can be exercised without MLX.
"""
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add python directory to path for imports
python_dir = Path(__file__).parent.parent / 'python'
sys.path.insert(0, str(python_dir))


class ScriptedEngine:
    """
    Engine double driven by a context -> output table

    - responses: context -> raw text, or an Exception instance to raise
      (contexts not in the table echo back the context)
    - embeddings: text -> vector (or None)
    - load_error: exception raised from load()
    - load_gate: asyncio.Event that load() waits on before completing
    - delay: seconds each completion suspends for
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        embeddings: Optional[Dict[str, Any]] = None,
        load_error: Optional[BaseException] = None,
        load_gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
    ):
        self.model_id = "test-model"
        self.responses = responses or {}
        self.embeddings = embeddings or {}
        self.load_error = load_error
        self.load_gate = load_gate
        self.delay = delay

        self.loaded = False
        self.unloaded = False
        self.load_calls = 0
        self.calls: List[str] = []
        self.requests: List[Any] = []
        self.embed_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def load(self) -> None:
        self.load_calls += 1
        if self.load_gate is not None:
            await self.load_gate.wait()
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True

    async def complete(self, request: Any) -> str:
        self.calls.append(request.context)
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        output = self.responses.get(request.context, request.context)
        if isinstance(output, BaseException):
            raise output
        return output

    async def embed(self, text: str):
        self.embed_calls.append(text)
        await asyncio.sleep(0)
        output = self.embeddings.get(text)
        if isinstance(output, BaseException):
            raise output
        return output

    def unload(self) -> None:
        self.unloaded = True

    @property
    def metadata(self) -> Dict[str, Any]:
        return {"model_id": self.model_id, "dtype": "float16"} if self.loaded else {}


@pytest.fixture
def make_engine():
    """Factory for ScriptedEngine instances"""
    return ScriptedEngine


@pytest.fixture(autouse=True)
def reset_config():
    """Reset global config before each test"""
    import config_loader

    config_loader._global_config = None
    yield
    config_loader._global_config = None


@pytest.fixture
def temp_config(tmp_path):
    """
    Create a temporary config file for testing

    Returns:
        Path to temporary config file
    """
    config_content = """
python_bridge:
  max_buffer_size: 1048576

model:
  model_id: "test-org/test-model"
  default_context_length: 4096
  default_max_tokens: 256
  max_generation_tokens: 1024
  max_temperature: 2.0
  max_penalty: 2.0
  max_stop_sequences: 4
  max_context_chars: 1000

embedding:
  pooling: "mean"
  normalize: false

telemetry:
  enabled: true
  sampling_rate: 1.0

environments:
  production:
    model:
      max_generation_tokens: 512
    telemetry:
      enabled: false
"""

    config_file = tmp_path / "runtime.yaml"
    config_file.write_text(config_content)

    return config_file
