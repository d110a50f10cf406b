import threading
from typing import Dict, List, Optional

import numpy as np
import pytest

from llama_stream import LogitsSampler, ModelContext

# Byte-level fake vocabulary: ids 0-255 are raw bytes.
BOS = 256
EOS = 257
N_VOCAB = 512


class FakeBackend:
    """In-process ModelBackend driven by a script of sampled tokens.

    get_logits puts all the probability mass on the next scripted token, so
    sampling is deterministic whatever the temperature or seed. Once the
    script runs out, EOS is returned. Sampler chains are LogitsSamplers over
    those logits.

    With block_decode_at set, that decode call sets `decode_blocked` and
    waits for `unblock_decode`.
    """

    def __init__(
        self,
        *,
        script: Optional[List[int]] = None,
        pieces: Optional[Dict[int, bytes]] = None,
        max_ctx: int = 4096,
        gpu_offload: bool = True,
        fail_load: bool = False,
        fail_decode_at: Optional[int] = None,
        decode_status: int = -3,
        block_decode_at: Optional[int] = None,
        fail_sampler: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.script = list(script or [])
        self.pieces = dict(pieces or {})
        self.max_ctx = max_ctx
        self.gpu_offload = gpu_offload
        self.fail_load = fail_load
        self.fail_decode_at = fail_decode_at
        self.decode_status = decode_status
        self.block_decode_at = block_decode_at
        self.fail_sampler = fail_sampler
        self.decode_blocked = threading.Event()
        self.unblock_decode = threading.Event()
        self.metadata = dict(metadata or {})

        self.calls: List[str] = []
        self.decoded: List[list] = []
        self.tokenized: List[bytes] = []
        self.n_gpu_layers: Optional[int] = None
        self.n_threads: Optional[int] = None
        self.memory_clears = 0
        self.sampler_inits = 0
        self.sampler_frees = 0
        self._cursor = 0
        self._n_ctx: Dict[int, int] = {}
        self._next_handle = 1

    # Lifecycle

    def backend_init(self):
        self.calls.append("backend_init")

    def backend_free(self):
        self.calls.append("backend_free")

    def supports_gpu_offload(self):
        return self.gpu_offload

    def load_model(self, path_model, n_gpu_layers):
        self.calls.append("load_model")
        self.n_gpu_layers = n_gpu_layers
        if self.fail_load:
            return None
        handle = ("model", self._next_handle)
        self._next_handle += 1
        return handle

    def free_model(self, model):
        self.calls.append("free_model")

    def create_context(self, model, n_ctx, n_threads, n_batch):
        self.calls.append("create_context")
        self.n_threads = n_threads
        if n_ctx > self.max_ctx:
            return None
        handle = self._next_handle
        self._next_handle += 1
        self._n_ctx[handle] = n_ctx
        return handle

    def free_context(self, ctx):
        self.calls.append("free_context")

    # Context

    def n_ctx(self, ctx):
        return self._n_ctx[ctx]

    def decode(self, ctx, batch):
        self.decoded.append(batch.slots())
        if self.block_decode_at is not None and len(self.decoded) == self.block_decode_at:
            self.decode_blocked.set()
            self.unblock_decode.wait(timeout=5)
        if self.fail_decode_at is not None and len(self.decoded) == self.fail_decode_at:
            return self.decode_status
        return 0

    def get_logits(self, ctx, model, idx):
        logits = np.full(N_VOCAB, -np.inf, dtype=np.single)
        if self._cursor < len(self.script):
            token = self.script[self._cursor]
        else:
            token = EOS
        self._cursor += 1
        logits[token] = 0.0
        return logits

    def memory_clear(self, ctx):
        self.memory_clears += 1
        self._cursor = 0

    # Sampling

    def sampler_init(self, temp, seed):
        if self.fail_sampler:
            return None
        self.sampler_inits += 1
        return LogitsSampler(temp=temp, seed=seed)

    def sampler_sample(self, sampler, ctx, idx):
        return sampler.sample_logits(self.get_logits(ctx, None, idx))

    def sampler_free(self, sampler):
        self.sampler_frees += 1

    # Vocab

    def n_vocab(self, model):
        return N_VOCAB

    def tokenize(self, model, text, add_bos):
        self.tokenized.append(text)
        return ([BOS] if add_bos else []) + list(text)

    def token_to_piece(self, model, token):
        if token in self.pieces:
            return self.pieces[token]
        if token < 256:
            return bytes([token])
        return b""

    def token_is_eog(self, model, token):
        return token == EOS

    def token_bos(self, model):
        return BOS

    def token_eos(self, model):
        return EOS

    def token_get_text(self, model, token):
        return {BOS: "<s>", EOS: "</s>"}.get(token, self.token_to_piece(model, token).decode("utf-8", "replace"))

    def model_metadata(self, model):
        return dict(self.metadata)


def script_for(text: str) -> List[int]:
    """One byte token per UTF-8 byte of text."""
    return list(text.encode("utf-8"))


@pytest.fixture
def model_path(tmp_path):
    path = tmp_path / "fake.gguf"
    path.write_bytes(b"GGUF")
    return str(path)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def model(model_path, backend):
    model = ModelContext.load(model_path, context_size=64, backend=backend)
    yield model
    model.close()
