from typing import Optional


class LlamaStreamError(Exception):
    """Base exception for all llama-stream errors."""


class ModelLoadError(LlamaStreamError, ValueError):
    """The model file could not be loaded by the backend."""


class ContextInitError(LlamaStreamError, ValueError):
    """The inference context could not be allocated for the model."""


class KVCacheTooSmallError(LlamaStreamError, ValueError):
    """The prompt plus the requested tokens do not fit in the context window."""


class DecodingError(LlamaStreamError, RuntimeError):
    """The backend reported a failed decode step."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ContextBusyError(LlamaStreamError, RuntimeError):
    """Another generation currently owns the model context."""
