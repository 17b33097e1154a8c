"""
Unit tests for the MLX generator helpers and MLXEngine

mlx-lm entry points are replaced with fakes so these run on any host.
"""

import asyncio
import numpy as np
import pytest
from pathlib import Path
from types import SimpleNamespace
import sys
import threading
import time

sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / 'python'))

from errors import EngineInvocationError, EngineLoadError
from models import generator, loader
from models.engine import MLXEngine
from models.loader import ModelHandle
from service import InferenceService


def make_request(context="prompt", stop=None, temperature=0.7,
                 frequency_penalty=0.0, presence_penalty=0.0, max_tokens=32):
    return SimpleNamespace(
        context=context,
        stop=stop or [],
        temperature=temperature,
        frequency_penalty=frequency_penalty,
        presence_penalty=presence_penalty,
        max_tokens=max_tokens,
    )


@pytest.fixture
def handle():
    return ModelHandle(model_id="test-model", model=object(), tokenizer=object(), metadata={})


@pytest.fixture
def fake_mlx(monkeypatch):
    """Install a scripted stream_generate; returns the list of chunks it yields"""
    chunks = []
    calls = []

    def fake_stream_generate(model, tokenizer, prompt, **kwargs):
        calls.append({"prompt": prompt, **kwargs})
        for text in chunks:
            yield SimpleNamespace(text=text)

    monkeypatch.setattr(generator, "MLX_GENERATE_AVAILABLE", True)
    monkeypatch.setattr(generator, "mlx_stream_generate", fake_stream_generate)
    monkeypatch.setattr(generator, "make_sampler", lambda temp: ("sampler", temp))
    return SimpleNamespace(chunks=chunks, calls=calls)


class TestTruncateAtStop:
    def test_no_marker(self):
        assert generator.truncate_at_stop("hello world", ["</s>"]) is None

    def test_earliest_marker_wins(self):
        assert generator.truncate_at_stop("a END b STOP c", ["STOP", "END"]) == "a "

    def test_empty_markers_ignored(self):
        assert generator.truncate_at_stop("abc", ["", "c"]) == "ab"

    def test_no_stop_sequences(self):
        assert generator.truncate_at_stop("abc", []) is None


class TestPenaltyVector:
    def test_frequency_and_presence(self):
        penalty = generator.penalty_vector([1, 1, 3], vocab_size=5,
                                           frequency_penalty=0.5, presence_penalty=1.0)

        np.testing.assert_allclose(penalty, [0.0, 2.0, 0.0, 1.5, 0.0])

    def test_out_of_range_ids_dropped(self):
        penalty = generator.penalty_vector([-1, 7, 2], vocab_size=4,
                                           frequency_penalty=1.0, presence_penalty=0.0)

        np.testing.assert_allclose(penalty, [0.0, 0.0, 1.0, 0.0])

    def test_zero_penalties_have_no_processor(self):
        assert generator.make_penalty_processor(0.0, 0.0) is None


class TestGenerateText:
    def test_unavailable_raises(self, handle, monkeypatch):
        monkeypatch.setattr(generator, "MLX_GENERATE_AVAILABLE", False)

        with pytest.raises(EngineInvocationError):
            generator.generate_text(handle, make_request())

    def test_concatenates_chunks(self, handle, fake_mlx):
        fake_mlx.chunks.extend(["Hel", "lo", " world"])

        assert generator.generate_text(handle, make_request()) == "Hello world"
        assert fake_mlx.calls[0]["prompt"] == "prompt"
        assert fake_mlx.calls[0]["max_tokens"] == 32
        assert fake_mlx.calls[0]["sampler"] == ("sampler", 0.7)
        assert "logits_processors" not in fake_mlx.calls[0]

    def test_stops_at_sequence_across_chunks(self, handle, fake_mlx):
        fake_mlx.chunks.extend(['{"a": 1}', "</", "s>", "trailing"])

        result = generator.generate_text(handle, make_request(stop=["</s>"]))

        assert result == '{"a": 1}'

    def test_penalties_add_processor(self, handle, fake_mlx):
        fake_mlx.chunks.append("x")

        generator.generate_text(handle, make_request(presence_penalty=0.5))

        assert len(fake_mlx.calls[0]["logits_processors"]) == 1

    def test_generation_error_wrapped(self, handle, monkeypatch, fake_mlx):
        def broken(*args, **kwargs):
            raise RuntimeError("metal fault")
            yield  # pragma: no cover

        monkeypatch.setattr(generator, "mlx_stream_generate", broken)

        with pytest.raises(EngineInvocationError, match="metal fault"):
            generator.generate_text(handle, make_request())


class TestBackbone:
    def test_finds_inner_model(self):
        inner = lambda x: x  # noqa: E731
        assert generator._backbone(SimpleNamespace(model=inner)) is inner

    def test_none_when_missing(self):
        assert generator._backbone(SimpleNamespace()) is None

    def test_embedding_without_backbone(self, monkeypatch):
        monkeypatch.setattr(generator, "MLX_GENERATE_AVAILABLE", True)
        monkeypatch.setattr(generator, "mx", object())
        handle = ModelHandle("test-model", SimpleNamespace(), object(), {})

        assert generator.compute_embedding(handle, "text") is None


class TestMLXEngine:
    @pytest.mark.asyncio
    async def test_complete_before_load(self):
        engine = MLXEngine("test-model")

        with pytest.raises(EngineInvocationError, match="Model not initialized"):
            await engine.complete(make_request())

    @pytest.mark.asyncio
    async def test_load_and_complete(self, monkeypatch, handle):
        loads = []

        def fake_load(model_id, options):
            loads.append((model_id, options))
            return handle

        monkeypatch.setattr(loader, "load_model", fake_load)
        monkeypatch.setattr(generator, "generate_text", lambda h, r: f"echo:{r.context}")

        engine = MLXEngine("test-model", {"revision": "main"})
        await engine.load()
        await engine.load()

        assert loads == [("test-model", {"revision": "main"})]
        assert await engine.complete(make_request("hi")) == "echo:hi"

    @pytest.mark.asyncio
    async def test_unexpected_load_error_wrapped(self, monkeypatch):
        def fake_load(model_id, options):
            raise OSError("no space left")

        monkeypatch.setattr(loader, "load_model", fake_load)

        with pytest.raises(EngineLoadError, match="no space left"):
            await MLXEngine("test-model").load()

    @pytest.mark.asyncio
    async def test_embed_uses_config_pooling(self, monkeypatch, handle, temp_config):
        from config_loader import initialize_config

        initialize_config(str(temp_config), environment="development")
        seen = []

        def fake_embedding(h, text, pooling, normalize):
            seen.append((text, pooling, normalize))
            return [0.1, 0.2]

        monkeypatch.setattr(loader, "load_model", lambda model_id, options: handle)
        monkeypatch.setattr(generator, "compute_embedding", fake_embedding)

        engine = MLXEngine("test-model")
        await engine.load()

        assert await engine.embed("hello") == [0.1, 0.2]
        assert seen == [("hello", "mean", False)]

    def test_from_config_requires_model_id(self):
        from config_loader import Config

        with pytest.raises(ValueError):
            MLXEngine.from_config(Config({}))

    def test_from_config(self, temp_config):
        from config_loader import load_config

        engine = MLXEngine.from_config(load_config(str(temp_config)))

        assert engine.model_id == "test-org/test-model"
        assert engine.options["revision"] == "main"
        assert engine.metadata == {}

    def test_from_config_rejects_invalid_model_id(self):
        from config_loader import Config

        with pytest.raises(ValueError, match="invalid characters"):
            MLXEngine.from_config(Config({"model": {"model_id": "../weights"}}))

    def test_from_config_concurrency_limit(self):
        from config_loader import Config

        config = Config({"model": {"model_id": "org/model"}, "mlx": {"concurrency_limit": 2}})

        assert MLXEngine.from_config(config).concurrency_limit == 2

    def test_unload(self, monkeypatch, handle):
        unloaded = []
        monkeypatch.setattr(loader, "unload_model", lambda h: unloaded.append(h))

        engine = MLXEngine("test-model")
        engine.handle = handle
        assert engine.metadata == {}
        handle.metadata["dtype"] = "float16"
        assert engine.metadata == {"dtype": "float16"}

        engine.unload()
        engine.unload()

        assert unloaded == [handle]
        assert engine.handle is None


class TestMLXSerialization:
    """One MLX call per engine at a time, across completion and embedding"""

    @pytest.fixture
    def blocking_mlx(self, monkeypatch, handle):
        state = SimpleNamespace(active=0, max_active=0, order=[])
        lock = threading.Lock()

        def enter(name):
            with lock:
                state.active += 1
                state.max_active = max(state.max_active, state.active)
                state.order.append(name)
            time.sleep(0.05)
            with lock:
                state.active -= 1

        def fake_generate(h, request):
            enter(f"complete:{request.context}")
            return request.context

        def fake_embedding(h, text, pooling, normalize):
            enter(f"embed:{text}")
            return [1.0, 2.0]

        monkeypatch.setattr(loader, "load_model", lambda model_id, options: handle)
        monkeypatch.setattr(generator, "generate_text", fake_generate)
        monkeypatch.setattr(generator, "compute_embedding", fake_embedding)
        return state

    @pytest.mark.asyncio
    async def test_embed_waits_for_running_completion(self, blocking_mlx):
        service = InferenceService(MLXEngine("test-model"))
        await service.initialize()

        pending = service.submit_text("x", 0.7, [], 0.0, 0.0, 8)
        await asyncio.sleep(0.01)
        vector = await service.embed("y")

        assert vector == [1.0, 2.0]
        assert await pending == "x"
        assert blocking_mlx.max_active == 1
        assert blocking_mlx.order == ["complete:x", "embed:y"]

    @pytest.mark.asyncio
    async def test_concurrent_embeds_serialized(self, blocking_mlx):
        engine = MLXEngine("test-model")
        await engine.load()

        results = await asyncio.gather(*(engine.embed(f"t{i}") for i in range(3)))

        assert results == [[1.0, 2.0]] * 3
        assert blocking_mlx.max_active == 1

    @pytest.mark.asyncio
    async def test_limit_above_one_allows_overlap(self, blocking_mlx):
        engine = MLXEngine("test-model", concurrency_limit=2)
        await engine.load()

        await asyncio.gather(engine.embed("a"), engine.embed("b"))

        assert blocking_mlx.max_active == 2
