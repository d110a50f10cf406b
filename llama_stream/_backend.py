from __future__ import annotations

from typing import (
    Any,
    Dict,
    List,
    Optional,
    TYPE_CHECKING,
)
from typing_extensions import Protocol, TypeAlias

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from llama_stream._internals import BatchBuffer

# Opaque handles owned by the backend. The core never looks inside them.
ModelHandle: TypeAlias = Any
ContextHandle: TypeAlias = Any
SamplerHandle: TypeAlias = Any


class ModelBackend(Protocol):
    """In-process capabilities the streaming core needs from a model runtime.

    `LlamaCppBackend` implements this over the llama.cpp C API. Load and
    context creation return `None` on failure, decode returns the raw
    status code (0 = success); interpreting failures is left to the caller.

    `sampler_init` builds a sampling chain (temperature then seeded
    distribution, greedy when temp <= 0) that `sampler_sample` runs over the
    logits of one batch position. A backend without a native chain can
    return a `LogitsSampler` and feed it `get_logits`.
    """

    # Lifecycle

    def backend_init(self) -> None: ...

    def backend_free(self) -> None: ...

    def supports_gpu_offload(self) -> bool: ...

    def load_model(self, path_model: str, n_gpu_layers: int) -> Optional[ModelHandle]: ...

    def free_model(self, model: ModelHandle) -> None: ...

    def create_context(
        self,
        model: ModelHandle,
        n_ctx: int,
        n_threads: int,
        n_batch: int,
    ) -> Optional[ContextHandle]: ...

    def free_context(self, ctx: ContextHandle) -> None: ...

    # Context

    def n_ctx(self, ctx: ContextHandle) -> int: ...

    def decode(self, ctx: ContextHandle, batch: "BatchBuffer") -> int: ...

    def get_logits(
        self, ctx: ContextHandle, model: ModelHandle, idx: int
    ) -> npt.NDArray[np.single]: ...

    def memory_clear(self, ctx: ContextHandle) -> None: ...

    # Sampling

    def sampler_init(self, temp: float, seed: int) -> Optional[SamplerHandle]: ...

    def sampler_sample(self, sampler: SamplerHandle, ctx: ContextHandle, idx: int) -> int: ...

    def sampler_free(self, sampler: SamplerHandle) -> None: ...
    # Vocab

    def n_vocab(self, model: ModelHandle) -> int: ...

    def tokenize(self, model: ModelHandle, text: bytes, add_bos: bool) -> List[int]: ...

    def token_to_piece(self, model: ModelHandle, token: int) -> bytes: ...

    def token_is_eog(self, model: ModelHandle, token: int) -> bool: ...

    def token_bos(self, model: ModelHandle) -> int: ...

    def token_eos(self, model: ModelHandle) -> int: ...

    def token_get_text(self, model: ModelHandle, token: int) -> str: ...

    def model_metadata(self, model: ModelHandle) -> Dict[str, str]: ...
