from __future__ import annotations

import ctypes
import logging

from typing import (
    Dict,
    List,
    Optional,
)

from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

import llama_cpp.llama_cpp as llama_cpp

from ._internals import BatchBuffer
from ._logger import logger

# enum ggml_log_level: NONE, DEBUG, INFO, WARN, ERROR, CONT
_GGML_LOG_LEVELS = {
    0: logging.DEBUG,
    1: logging.DEBUG,
    2: logging.DEBUG,
    3: logging.WARNING,
    4: logging.ERROR,
}
_GGML_LOG_LEVEL_CONT = 5

_last_log_level = logging.DEBUG


@llama_cpp.llama_log_callback
def _llama_log_callback(level: int, text: bytes, user_data: ctypes.c_void_p):
    # CONT lines continue the previous message at its level
    global _last_log_level
    if level != _GGML_LOG_LEVEL_CONT:
        _last_log_level = _GGML_LOG_LEVELS.get(level, logging.DEBUG)
    if text and logger.isEnabledFor(_last_log_level):
        logger.log(_last_log_level, text.decode("utf-8", errors="replace").rstrip("\n"))


@dataclass
class LlamaModelHandle:
    model: llama_cpp.llama_model_p
    vocab: llama_cpp.llama_vocab_p


class LlamaCppBackend:
    """ModelBackend over the llama.cpp C API exposed by llama_cpp.llama_cpp.

    Each context gets a native llama_batch of n_batch slots, filled from the
    BatchBuffer on every decode call and freed together with the context.
    """

    def __init__(self):
        self._native_batches: Dict[int, llama_cpp.llama_batch] = {}
        self._n_batch: Dict[int, int] = {}

    # Lifecycle

    def backend_init(self):
        llama_cpp.llama_log_set(_llama_log_callback, ctypes.c_void_p(0))
        llama_cpp.llama_backend_init()

    def backend_free(self):
        llama_cpp.llama_backend_free()

    def supports_gpu_offload(self) -> bool:
        return bool(llama_cpp.llama_supports_gpu_offload())

    def load_model(self, path_model: str, n_gpu_layers: int) -> Optional[LlamaModelHandle]:
        params = llama_cpp.llama_model_default_params()
        params.n_gpu_layers = n_gpu_layers

        model = llama_cpp.llama_model_load_from_file(path_model.encode("utf-8"), params)
        if model is None:
            return None

        vocab = llama_cpp.llama_model_get_vocab(model)
        if vocab is None:
            llama_cpp.llama_model_free(model)
            return None

        return LlamaModelHandle(model=model, vocab=vocab)

    def free_model(self, model: LlamaModelHandle):
        llama_cpp.llama_model_free(model.model)

    def create_context(
        self,
        model: LlamaModelHandle,
        n_ctx: int,
        n_threads: int,
        n_batch: int,
    ) -> Optional[llama_cpp.llama_context_p]:
        params = llama_cpp.llama_context_default_params()
        params.n_ctx = n_ctx
        params.n_batch = n_batch
        params.n_threads = n_threads
        params.n_threads_batch = n_threads

        ctx = llama_cpp.llama_init_from_model(model.model, params)
        if ctx is None:
            return None

        self._native_batches[ctx] = llama_cpp.llama_batch_init(n_batch, 0, 1)
        self._n_batch[ctx] = n_batch
        return ctx

    def free_context(self, ctx: llama_cpp.llama_context_p):
        batch = self._native_batches.pop(ctx, None)
        self._n_batch.pop(ctx, None)
        if batch is not None:
            llama_cpp.llama_batch_free(batch)
        llama_cpp.llama_free(ctx)

    # Context

    def n_ctx(self, ctx: llama_cpp.llama_context_p) -> int:
        return llama_cpp.llama_n_ctx(ctx)

    def decode(self, ctx: llama_cpp.llama_context_p, batch: BatchBuffer) -> int:
        native = self._native_batches[ctx]
        n_tokens = batch.n_tokens()
        if n_tokens > self._n_batch[ctx]:
            raise IndexError(
                f"Batch of {n_tokens} tokens exceeds native capacity {self._n_batch[ctx]}"
            )

        for i, (token, pos, seq_ids, logits) in enumerate(batch.slots()):
            native.token[i] = token
            native.pos[i] = pos
            native.n_seq_id[i] = len(seq_ids)
            for k, seq_id in enumerate(seq_ids):
                native.seq_id[i][k] = seq_id
            native.logits[i] = int(logits)
        native.n_tokens = n_tokens

        return llama_cpp.llama_decode(ctx, native)

    def get_logits(
        self, ctx: llama_cpp.llama_context_p, model: LlamaModelHandle, idx: int
    ) -> npt.NDArray[np.single]:
        n_vocab = self.n_vocab(model)
        ptr = llama_cpp.llama_get_logits_ith(ctx, idx)
        if not ptr:
            raise RuntimeError(f"No logits available for batch index {idx}")
        return np.ctypeslib.as_array(ptr, shape=(n_vocab,)).copy()

    def memory_clear(self, ctx: llama_cpp.llama_context_p):
        llama_cpp.llama_memory_clear(llama_cpp.llama_get_memory(ctx), True)

    # Sampling

    def sampler_init(self, temp: float, seed: int) -> Optional[llama_cpp.llama_sampler_p]:
        params = llama_cpp.llama_sampler_chain_default_params()
        chain = llama_cpp.llama_sampler_chain_init(params)
        if not chain:
            return None

        try:
            if temp <= 0.0:
                self._chain_add(chain, llama_cpp.llama_sampler_init_greedy())
            else:
                self._chain_add(chain, llama_cpp.llama_sampler_init_temp(temp))
                self._chain_add(chain, llama_cpp.llama_sampler_init_dist(seed))
        except BaseException:
            llama_cpp.llama_sampler_free(chain)
            raise
        return chain

    @staticmethod
    def _chain_add(chain: llama_cpp.llama_sampler_p, sampler: llama_cpp.llama_sampler_p):
        if not sampler:
            raise RuntimeError("Failed to initialize sampler")
        # the chain takes ownership of the stage
        llama_cpp.llama_sampler_chain_add(chain, sampler)

    def sampler_sample(
        self, sampler: llama_cpp.llama_sampler_p, ctx: llama_cpp.llama_context_p, idx: int
    ) -> int:
        return llama_cpp.llama_sampler_sample(sampler, ctx, idx)

    def sampler_free(self, sampler: llama_cpp.llama_sampler_p):
        llama_cpp.llama_sampler_free(sampler)

    # Vocab

    def n_vocab(self, model: LlamaModelHandle) -> int:
        return llama_cpp.llama_n_vocab(model.vocab)

    def tokenize(self, model: LlamaModelHandle, text: bytes, add_bos: bool) -> List[int]:
        n_tokens_alloc = len(text) + 2
        tokens = (llama_cpp.llama_token * n_tokens_alloc)()

        n_tokens = llama_cpp.llama_tokenize(
            model.vocab, text, len(text), tokens, n_tokens_alloc, add_bos, False
        )

        # A negative count is the required buffer size.
        if n_tokens < 0:
            n_tokens_alloc = -n_tokens
            tokens = (llama_cpp.llama_token * n_tokens_alloc)()
            n_tokens = llama_cpp.llama_tokenize(
                model.vocab, text, len(text), tokens, n_tokens_alloc, add_bos, False
            )
            if n_tokens < 0:
                raise RuntimeError(
                    f'Failed to tokenize: text="{text}" n_tokens={n_tokens}'
                )

        return list(tokens[:n_tokens])

    def token_to_piece(self, model: LlamaModelHandle, token: int) -> bytes:
        size = 32
        buf = (ctypes.c_char * size)()
        n = llama_cpp.llama_token_to_piece(model.vocab, token, buf, size, 0, False)

        if n < 0:
            size = -n
            buf = (ctypes.c_char * size)()
            n = llama_cpp.llama_token_to_piece(model.vocab, token, buf, size, 0, False)
            if n < 0:
                raise RuntimeError(f"Failed to get piece for token {token}")

        return bytes(buf[:n])

    def token_is_eog(self, model: LlamaModelHandle, token: int) -> bool:
        return bool(llama_cpp.llama_vocab_is_eog(model.vocab, token))

    def token_bos(self, model: LlamaModelHandle) -> int:
        return llama_cpp.llama_vocab_bos(model.vocab)

    def token_eos(self, model: LlamaModelHandle) -> int:
        return llama_cpp.llama_vocab_eos(model.vocab)

    def token_get_text(self, model: LlamaModelHandle, token: int) -> str:
        return llama_cpp.llama_vocab_get_text(model.vocab, token).decode("utf-8", errors="replace")

    def model_metadata(self, model: LlamaModelHandle) -> Dict[str, str]:
        metadata: Dict[str, str] = {}
        # 16KB covers almost every value, chat templates included, in one pass.
        buffer_size = 16384
        buffer = ctypes.create_string_buffer(buffer_size)

        get_key_by_index = llama_cpp.llama_model_meta_key_by_index
        get_val_by_index = llama_cpp.llama_model_meta_val_str_by_index
        metadata_count = llama_cpp.llama_model_meta_count(model.model)
        for i in range(metadata_count):
            nbytes = get_key_by_index(model.model, i, buffer, buffer_size)
            if nbytes > buffer_size:
                buffer_size = nbytes + 1024
                buffer = ctypes.create_string_buffer(buffer_size)
                nbytes = get_key_by_index(model.model, i, buffer, buffer_size)
            key = buffer.value.decode("utf-8")

            nbytes = get_val_by_index(model.model, i, buffer, buffer_size)
            if nbytes > buffer_size:
                buffer_size = nbytes + 1024
                buffer = ctypes.create_string_buffer(buffer_size)
                nbytes = get_val_by_index(model.model, i, buffer, buffer_size)
            value = buffer.value.decode("utf-8")

            metadata[key] = value
        return metadata
