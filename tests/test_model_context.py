import sys
import types

import pytest

from conftest import FakeBackend

import llama_stream._internals as internals
from llama_stream import (
    ContextInitError,
    ModelContext,
    ModelLoadError,
)
from llama_stream._internals import default_n_threads


def test_load_initializes_backend_model_and_context(model_path, backend):
    model = ModelContext.load(model_path, context_size=128, backend=backend)

    assert backend.calls == ["backend_init", "load_model", "create_context"]
    assert model.n_ctx() == 128
    assert model.tokenize("Hi") == [256, ord("H"), ord("i")]
    assert model.tokenize("Hi", add_bos=False) == [ord("H"), ord("i")]
    model.close()


def test_close_releases_in_reverse_order(model_path, backend):
    model = ModelContext.load(model_path, backend=backend)
    model.close()

    assert backend.calls[-3:] == ["free_context", "free_model", "backend_free"]
    assert model.closed


def test_close_is_idempotent(model_path, backend):
    model = ModelContext.load(model_path, backend=backend)
    model.close()
    model.close()

    assert backend.calls.count("free_context") == 1
    assert backend.calls.count("backend_free") == 1


def test_context_manager_closes(model_path, backend):
    with ModelContext.load(model_path, backend=backend) as model:
        assert not model.closed
    assert model.closed
    assert backend.calls[-1] == "backend_free"


def test_closed_context_rejects_calls(model_path, backend):
    model = ModelContext.load(model_path, backend=backend)
    model.close()

    with pytest.raises(RuntimeError):
        model.n_ctx()


def test_missing_model_file(tmp_path, backend):
    with pytest.raises(ModelLoadError):
        ModelContext.load(str(tmp_path / "missing.gguf"), backend=backend)
    assert backend.calls == []


def test_model_load_failure_rolls_back_backend(model_path):
    backend = FakeBackend(fail_load=True)

    with pytest.raises(ModelLoadError):
        ModelContext.load(model_path, backend=backend)
    assert backend.calls == ["backend_init", "load_model", "backend_free"]
    assert internals._backend_refs.count(backend) == 0


def test_context_init_failure_frees_model_then_backend(model_path):
    backend = FakeBackend(max_ctx=1024)

    with pytest.raises(ContextInitError):
        ModelContext.load(model_path, context_size=2048, backend=backend)
    assert backend.calls == [
        "backend_init",
        "load_model",
        "create_context",
        "free_model",
        "backend_free",
    ]


def test_load_errors_are_value_errors(model_path):
    with pytest.raises(ValueError):
        ModelContext.load(model_path, backend=FakeBackend(fail_load=True))


def test_backend_init_is_shared_between_contexts(model_path, backend):
    first = ModelContext.load(model_path, backend=backend)
    second = ModelContext.load(model_path, backend=backend)
    assert backend.calls.count("backend_init") == 1
    assert internals._backend_refs.count(backend) == 2

    first.close()
    assert "backend_free" not in backend.calls

    second.close()
    assert backend.calls.count("backend_free") == 1
    assert internals._backend_refs.count(backend) == 0


def test_gpu_layers_forced_to_zero_without_offload(model_path):
    backend = FakeBackend(gpu_offload=False)
    with ModelContext.load(model_path, backend=backend, n_gpu_layers=99):
        assert backend.n_gpu_layers == 0


def test_gpu_layers_kept_with_offload(model_path, backend):
    with ModelContext.load(model_path, backend=backend, n_gpu_layers=99):
        assert backend.n_gpu_layers == 99


@pytest.mark.parametrize(
    "cpu_count, expected",
    [(None, 1), (1, 1), (3, 1), (4, 2), (10, 8), (64, 8)],
)
def test_default_n_threads(monkeypatch, cpu_count, expected):
    monkeypatch.setattr(internals.os, "cpu_count", lambda: cpu_count)
    assert default_n_threads() == expected


def test_thread_count_reaches_backend(model_path, backend):
    with ModelContext.load(model_path, backend=backend, n_threads=3) as model:
        assert backend.n_threads == 3
        assert model.n_threads == 3


@pytest.fixture
def default_backend(monkeypatch):
    # Stand in for the llama.cpp module so the default path builds a FakeBackend.
    monkeypatch.setitem(
        sys.modules, "llama_stream.llama_backend", types.SimpleNamespace(LlamaCppBackend=FakeBackend)
    )
    monkeypatch.setattr(internals, "_default_backend", None)
    return internals.default_backend()


def test_default_backend_is_created_once(default_backend):
    assert isinstance(default_backend, FakeBackend)
    assert internals.default_backend() is default_backend


def test_contexts_on_the_default_backend_share_one_init(model_path, default_backend):
    first = ModelContext.load(model_path)
    second = ModelContext.load(model_path)
    assert first.backend is second.backend is default_backend
    assert default_backend.calls.count("backend_init") == 1

    first.close()
    assert "backend_free" not in default_backend.calls
    assert second.n_ctx() == 2048

    second.close()
    assert default_backend.calls.count("backend_free") == 1


def test_logits_row_for_a_batch_position(model):
    row = model.logits(0)
    assert row.shape == (512,)
    assert row.argmax() == 257
