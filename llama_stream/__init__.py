from ._exceptions import (
    LlamaStreamError,
    ModelLoadError,
    ContextInitError,
    KVCacheTooSmallError,
    DecodingError,
    ContextBusyError,
)
from ._internals import (
    ModelContext,
    BatchBuffer,
    Sampler,
    SamplingParams,
    LogitsSampler,
)
from ._utf8 import Utf8Reassembler
from ._chat_format import ChatFormatter
from .session import (
    InferenceSession,
    TokenStream,
    AsyncTokenStream,
    SessionState,
)

__version__ = "0.1.0"
