from __future__ import annotations

import os
import threading

from typing import (
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from dataclasses import dataclass
from contextlib import ExitStack

import numpy as np
import numpy.typing as npt

from ._backend import ModelBackend, ModelHandle, ContextHandle, SamplerHandle
from ._exceptions import ModelLoadError, ContextInitError
from ._logger import logger

DEFAULT_N_CTX = 2048
DEFAULT_BATCH_CAPACITY = 512
DEFAULT_SEED = 1234
DEFAULT_TEMP = 0.8

MAX_THREADS = 8


def default_n_threads() -> int:
    """Leave two cores to the rest of the system, but use between 1 and 8 threads."""
    cpu_count = os.cpu_count() or 1
    return max(1, min(MAX_THREADS, cpu_count - 2))


class _BackendRefCount:
    """Pairs backend_init/backend_free calls across every live ModelContext
    sharing the same backend object."""

    def __init__(self):
        self._lock = threading.Lock()
        # id -> (backend, count); holding the backend keeps its id from being reused
        self._counts: Dict[int, Tuple[ModelBackend, int]] = {}

    def acquire(self, backend: ModelBackend):
        with self._lock:
            _, count = self._counts.get(id(backend), (backend, 0))
            if count == 0:
                backend.backend_init()
            self._counts[id(backend)] = (backend, count + 1)

    def release(self, backend: ModelBackend):
        with self._lock:
            _, count = self._counts.get(id(backend), (backend, 0))
            if count <= 0:
                return
            if count == 1:
                del self._counts[id(backend)]
                backend.backend_free()
            else:
                self._counts[id(backend)] = (backend, count - 1)

    def count(self, backend: ModelBackend) -> int:
        with self._lock:
            return self._counts.get(id(backend), (backend, 0))[1]


_backend_refs = _BackendRefCount()

_default_backend: Optional[ModelBackend] = None
_default_backend_lock = threading.Lock()


def default_backend() -> ModelBackend:
    """The process-wide LlamaCppBackend shared by every ModelContext loaded
    without an explicit backend."""
    global _default_backend
    with _default_backend_lock:
        if _default_backend is None:
            from .llama_backend import LlamaCppBackend

            _default_backend = LlamaCppBackend()
        return _default_backend


# Python wrappers over the backend model + context pair


class ModelContext:
    """Owns a loaded model and the inference context (KV cache) bound to it.

    The context is created once and reused across many generations, but a
    decode step mutates the KV cache, so only one generation may drive it at
    a time. `lock` is the gate InferenceSession acquires for that.

    Handles are released in reverse order of acquisition: context, model,
    then the process-wide backend reference.
    """

    def __init__(
        self,
        *,
        path_model: str,
        n_ctx: int = DEFAULT_N_CTX,
        n_gpu_layers: int = -1,
        n_threads: Optional[int] = None,
        n_batch: int = DEFAULT_BATCH_CAPACITY,
        backend: Optional[ModelBackend] = None,
    ):
        if backend is None:
            backend = default_backend()

        self.path_model = path_model
        self.backend = backend
        self.n_threads = n_threads if n_threads is not None else default_n_threads()
        self.n_batch = n_batch
        self.lock = threading.Lock()
        self._exit_stack = ExitStack()

        self.model: Optional[ModelHandle] = None
        self.ctx: Optional[ContextHandle] = None

        if not os.path.exists(path_model):
            raise ModelLoadError(f"Model path does not exist: {path_model}")

        _backend_refs.acquire(backend)
        self._exit_stack.callback(_backend_refs.release, backend)

        try:
            if n_gpu_layers != 0 and not backend.supports_gpu_offload():
                logger.debug("GPU offload not supported, forcing n_gpu_layers = 0")
                n_gpu_layers = 0

            model = backend.load_model(path_model, n_gpu_layers)
            if model is None:
                raise ModelLoadError(f"Failed to load model from file: {path_model}")
            self._exit_stack.callback(backend.free_model, model)

            logger.debug("Using %d threads", self.n_threads)

            ctx = backend.create_context(model, n_ctx, self.n_threads, n_batch)
            if ctx is None:
                raise ContextInitError(
                    f"Failed to create context with model (n_ctx = {n_ctx})"
                )
            self._exit_stack.callback(backend.free_context, ctx)
        except BaseException:
            self._exit_stack.close()
            raise

        self.model = model
        self.ctx = ctx

    @classmethod
    def load(
        cls, path: str, context_size: int = DEFAULT_N_CTX, **kwargs
    ) -> "ModelContext":
        return cls(path_model=path, n_ctx=context_size, **kwargs)

    def close(self):
        """Manually free the context, the model and the backend reference."""
        self.ctx = None
        self.model = None
        if getattr(self, "_exit_stack", None) is not None:
            self._exit_stack.close()

    def __del__(self):
        self.close()

    def __enter__(self) -> "ModelContext":
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def closed(self) -> bool:
        return self.ctx is None

    def _check_open(self):
        if self.ctx is None:
            raise RuntimeError("ModelContext is closed")

    # Context

    def n_ctx(self) -> int:
        self._check_open()
        return self.backend.n_ctx(self.ctx)

    def decode(self, batch: "BatchBuffer") -> int:
        """Evaluate the batch. Returns the backend status, 0 on success."""
        self._check_open()
        return self.backend.decode(self.ctx, batch)

    def logits(self, idx: int) -> npt.NDArray[np.single]:
        """Logits of the idx-th token of the last decoded batch."""
        self._check_open()
        return self.backend.get_logits(self.ctx, self.model, idx)

    def memory_clear(self):
        self._check_open()
        self.backend.memory_clear(self.ctx)

    # Vocab

    def n_vocab(self) -> int:
        self._check_open()
        return self.backend.n_vocab(self.model)

    def tokenize(self, text: str, add_bos: bool = True) -> List[int]:
        self._check_open()
        return self.backend.tokenize(self.model, text.encode("utf-8"), add_bos)

    def token_to_piece(self, token: int) -> bytes:
        self._check_open()
        return self.backend.token_to_piece(self.model, token)

    def token_is_eog(self, token: int) -> bool:
        self._check_open()
        return self.backend.token_is_eog(self.model, token)

    def token_bos(self) -> int:
        self._check_open()
        return self.backend.token_bos(self.model)

    def token_eos(self) -> int:
        self._check_open()
        return self.backend.token_eos(self.model)

    def token_get_text(self, token: int) -> str:
        self._check_open()
        return self.backend.token_get_text(self.model, token)

    # Extra
    def metadata(self) -> Dict[str, str]:
        self._check_open()
        return self.backend.model_metadata(self.model)


class BatchBuffer:
    """Fixed-capacity list of (token, pos, seq_ids, logits) slots submitted to
    the backend for one decode step."""

    def __init__(
        self,
        *,
        n_tokens: int = DEFAULT_BATCH_CAPACITY,
        n_seq_max: int = 1,
    ):
        # logical validity of parameters
        if n_tokens <= 0:
            raise ValueError(f"n_tokens must be positive, got {n_tokens}")
        if n_seq_max <= 0:
            raise ValueError(f"n_seq_max must be positive, got {n_seq_max}")

        self.n_tokens_capacity = n_tokens
        self.n_seq_max = n_seq_max

        self.token: List[int] = []
        self.pos: List[int] = []
        self.seq_id: List[Tuple[int, ...]] = []
        self.logits: List[bool] = []
        self.closed = False

    def close(self):
        """Release the slots. A closed batch can no longer be filled."""
        self.reset()
        self.closed = True

    def n_tokens(self) -> int:
        """
        Current number of tokens stored in the batch.
        """
        return len(self.token)

    def capacity(self) -> int:
        return self.n_tokens_capacity

    def space_left(self) -> int:
        return self.n_tokens_capacity - len(self.token)

    def reset(self):
        """
        Empties the batch. Call this before starting a new decoding step.
        """
        self.token.clear()
        self.pos.clear()
        self.seq_id.clear()
        self.logits.clear()

    def add_token(self, token: int, pos: int, seq_ids: Sequence[int], logits: bool):
        """
        Adds a single token to the batch.

        Args:
            token: The integer ID of the token to add.
            pos: The logical sequence position (n_past) of this token.
            seq_ids: The sequence IDs this token belongs to ((0,) for single-sequence generation).
            logits: Whether the backend should compute logits for this token.
        """
        if self.closed:
            raise RuntimeError("BatchBuffer is closed")

        if len(self.token) >= self.n_tokens_capacity:
            raise IndexError(
                f"BatchBuffer overflow[add_token]: Cannot add token. Capacity {self.n_tokens_capacity} reached."
            )

        if len(seq_ids) > self.n_seq_max:
            raise ValueError(
                f"BatchBuffer Error[add_token]: Token belongs to {len(seq_ids)} sequences, "
                f"but n_seq_max was initialized to {self.n_seq_max}."
            )

        self.token.append(token)
        self.pos.append(pos)
        self.seq_id.append(tuple(seq_ids))
        self.logits.append(bool(logits))

    def add_sequence(
        self,
        tokens: Sequence[int],
        start_pos: int,
        seq_ids: Sequence[int],
        logits_last: bool,
    ):
        """
        Adds consecutive tokens starting at start_pos. Logits are requested
        for the final token only, and only if logits_last is set.
        """
        if len(tokens) > self.space_left():
            raise IndexError(
                f"BatchBuffer overflow[add_sequence]: Cannot add {len(tokens)} tokens. "
                f"Space left: {self.space_left()}"
            )

        last = len(tokens) - 1
        for i, token in enumerate(tokens):
            self.add_token(token, start_pos + i, seq_ids, logits_last and i == last)

    def slots(self) -> List[Tuple[int, int, Tuple[int, ...], bool]]:
        return list(zip(self.token, self.pos, self.seq_id, self.logits))


# Sampling


@dataclass
class SamplingParams:
    temp: float = DEFAULT_TEMP  # <= 0.0 to sample greedily
    seed: int = DEFAULT_SEED    # the seed used to initialize the random stream


class Sampler:
    """Backend sampling chain built for one generation: temperature, then a
    seeded weighted pick, or greedy when temp <= 0.

    The chain is owned by the backend and must be freed with `close()` once
    the generation ends.
    """

    def __init__(
        self,
        *,
        backend: ModelBackend,
        temp: float = DEFAULT_TEMP,
        seed: int = DEFAULT_SEED,
    ):
        self.backend = backend
        self.temp = temp
        self.seed = seed
        self.sampler: Optional[SamplerHandle] = backend.sampler_init(temp, seed)
        if self.sampler is None:
            raise RuntimeError("Failed to initialize sampler")

    @classmethod
    def from_params(cls, backend: ModelBackend, params: SamplingParams) -> "Sampler":
        return cls(backend=backend, temp=params.temp, seed=params.seed)

    def sample(self, ctx: ModelContext, idx: int = -1) -> int:
        """
        Sample a token from the idx-th output of the last evaluation
        """
        assert self.sampler is not None
        ctx._check_open()
        return self.backend.sampler_sample(self.sampler, ctx.ctx, idx)

    def close(self):
        if self.sampler is not None:
            self.backend.sampler_free(self.sampler)
            self.sampler = None

    def __del__(self):
        if getattr(self, "sampler", None) is not None:
            self.close()

    def __enter__(self) -> "Sampler":
        return self

    def __exit__(self, *exc_info):
        self.close()


def softmax(logits: npt.NDArray[np.floating]) -> npt.NDArray[np.float64]:
    """Numerically stable softmax that never fails on degenerate rows.

    NaN counts as -inf. A row with any +inf spreads the mass over those
    entries, and a row with no finite entry becomes uniform.
    """
    x = np.asarray(logits, dtype=np.float64)
    x = np.where(np.isnan(x), -np.inf, x)

    pos_inf = np.isposinf(x)
    if pos_inf.any():
        return pos_inf / pos_inf.sum()

    finite = np.isfinite(x)
    if not finite.any():
        return np.full(x.shape, 1.0 / x.shape[0])

    e = np.exp(x - x[finite].max())
    return e / e.sum()


class LogitsSampler:
    """The same temperature -> softmax -> seeded pick chain computed with
    numpy over a logits row, for backends without a native sampler.

    The random stream is private to the instance, so two samplers built with
    the same seed pick the same tokens from the same logits.
    """

    def __init__(self, *, temp: float = DEFAULT_TEMP, seed: int = DEFAULT_SEED):
        self.temp = temp
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def sample_logits(self, logits: npt.NDArray[np.floating]) -> int:
        x = np.array(logits, dtype=np.float64)
        n_vocab = x.shape[0]
        if n_vocab == 0:
            raise ValueError("Cannot sample from an empty logits row")

        if self.temp <= 0.0:
            return int(np.argmax(np.where(np.isnan(x), -np.inf, x)))

        with np.errstate(over="ignore"):
            probs = softmax(x * (1.0 / self.temp))

        cumulative = np.cumsum(probs)
        target = self._rng.random() * cumulative[-1]
        token = int(np.searchsorted(cumulative, target, side="right"))
        return min(token, n_vocab - 1)
