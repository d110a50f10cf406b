from __future__ import annotations

import asyncio
import enum
import functools
import threading

from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
)

from ._internals import (
    DEFAULT_BATCH_CAPACITY,
    BatchBuffer,
    ModelContext,
    Sampler,
    SamplingParams,
)
from ._chat_format import ChatFormatter
from ._exceptions import ContextBusyError, DecodingError, KVCacheTooSmallError
from ._logger import logger
from ._utf8 import Utf8Reassembler

DEFAULT_N_LEN = 1024
DEFAULT_MAX_TOKENS = 128

# Every generation runs on a single sequence.
_SEQ_IDS = (0,)


class SessionState(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


class TokenStream:
    """Lazy, single-use iterator over the text chunks of one generation.

    Each `next()` samples one token, feeds its piece through the UTF-8
    reassembler and, if needed, first decodes the previously sampled token.
    Only non-empty chunks are returned. Cancellation is cooperative: it is
    observed before the next step, never in the middle of a decode.

    The stream owns the model context gate until it reaches a terminal state;
    `close()` (or leaving a `with` block) releases everything early.
    """

    def __init__(
        self,
        *,
        model: ModelContext,
        sampling_params: SamplingParams,
        max_tokens: int,
        n_len: int = DEFAULT_N_LEN,
        n_batch: int = DEFAULT_BATCH_CAPACITY,
        cancel_event: Optional[threading.Event] = None,
        release: Optional[Callable[[], None]] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.n_len = n_len
        self.n_cur = 0
        self.n_decode = 0
        self.state = SessionState.IDLE

        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._release: Optional[Callable[[], None]] = None
        self._needs_decode = False
        # held while a step runs; close() defers to the step when it can't take it
        self._step_lock = threading.Lock()
        self._closing = False

        self._sampler: Optional[Sampler] = None
        self._batch: Optional[BatchBuffer] = BatchBuffer(n_tokens=n_batch)
        self._reassembler: Optional[Utf8Reassembler] = Utf8Reassembler()
        self._sampler = Sampler.from_params(model.backend, sampling_params)
        # the stream owns the gate only once everything above succeeded
        self._release = release

    # Prefill

    def _start(self, prompt: str):
        self.state = SessionState.INITIALIZING
        logger.debug('Attempting to complete "%s"', prompt)

        tokens = self.model.tokenize(prompt, add_bos=True)
        if not tokens:
            raise ValueError("Prompt produced no tokens")

        n_ctx = self.model.n_ctx()
        n_kv_req = len(tokens) + self.max_tokens

        logger.debug("n_len = %d, n_ctx = %d, n_kv_req = %d", self.n_len, n_ctx, n_kv_req)

        if n_kv_req > n_ctx:
            raise KVCacheTooSmallError(
                f"KV cache too small: prompt needs {len(tokens)} tokens plus "
                f"{self.max_tokens} to generate, but n_ctx = {n_ctx}"
            )

        # Start from an empty KV cache so earlier generations can't leak in.
        self.model.memory_clear()

        capacity = self._batch.capacity()
        for start in range(0, len(tokens), capacity):
            chunk = tokens[start:start + capacity]
            self._batch.reset()
            self._batch.add_sequence(
                chunk, start, _SEQ_IDS, logits_last=start + capacity >= len(tokens)
            )
            self._decode()

        self.n_cur = len(tokens)
        self.state = SessionState.GENERATING
        logger.info("Prefilled %d prompt tokens", len(tokens))

    def _decode(self):
        status = self.model.decode(self._batch)
        if status != 0:
            raise DecodingError(f"llama_decode failed with status {status}", code=status)

    # Generation

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        try:
            with self._step_lock:
                return self._advance()
        finally:
            if self._closing:
                self._close_now()

    def _advance(self) -> str:
        while self.state is SessionState.GENERATING:
            try:
                if self._closing or self._cancel_event.is_set():
                    logger.info("Generation cancelled after %d tokens", self.n_decode)
                    self._finish(SessionState.CANCELLED)
                    break

                if self.n_cur >= self.n_len or self.n_decode >= self.max_tokens:
                    text = self._complete()
                else:
                    text = self._step()
            except BaseException:
                logger.error("Generation failed after %d tokens", self.n_decode, exc_info=True)
                self._finish(SessionState.FAILED)
                raise

            if text:
                return text
        raise StopIteration

    def _step(self) -> str:
        if self._needs_decode:
            self._needs_decode = False
            self._decode()

        token = self._sampler.sample(self.model, self._batch.n_tokens() - 1)

        if self.model.token_is_eog(token):
            return self._complete()

        text = self._reassembler.feed(self.model.token_to_piece(token))

        self._batch.reset()
        self._batch.add_token(token, self.n_cur, _SEQ_IDS, True)
        self._needs_decode = True

        self.n_decode += 1
        self.n_cur += 1
        return text

    def _complete(self) -> str:
        text = self._reassembler.flush()
        logger.info("Generation complete. Tokens: %d", self.n_decode)
        self._finish(SessionState.COMPLETED)
        return text

    def _finish(self, state: SessionState):
        self.state = state
        if self._batch is not None:
            self._batch.close()
            self._batch = None
        self._reassembler = None
        if self._sampler is not None:
            self._sampler.close()
            self._sampler = None
        self._needs_decode = False

        release, self._release = self._release, None
        if release is not None:
            release()

    # Control

    def cancel(self):
        """Ask the stream to stop before its next step."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def close(self):
        """Stop and release the batch, the sampler and the context gate.

        If a step is running on another thread, the release happens as soon
        as that step returns, so the gate is never freed mid-decode.
        """
        self._closing = True
        self._close_now()

    def _close_now(self):
        if not self._step_lock.acquire(blocking=False):
            return
        try:
            if not self.state.terminal:
                self._finish(SessionState.CANCELLED)
        finally:
            self._step_lock.release()

    def __del__(self):
        if getattr(self, "_step_lock", None) is not None:
            self.close()

    def __enter__(self) -> "TokenStream":
        return self

    def __exit__(self, *exc_info):
        self.close()


_DONE = object()


class AsyncTokenStream:
    """Async iterator over a TokenStream. Each step runs in the default
    executor so the event loop is never blocked by a decode.

    Cancelling the consuming task cancels the generation; the stream is
    closed as soon as the in-flight step returns.
    """

    def __init__(self, stream: TokenStream):
        self.stream = stream
        self._pending: Optional["asyncio.Future[Any]"] = None

    def __aiter__(self) -> "AsyncTokenStream":
        return self

    async def __anext__(self) -> str:
        loop = asyncio.get_running_loop()
        future = self._pending = loop.run_in_executor(None, self._next_chunk)
        try:
            chunk = await asyncio.shield(future)
        except asyncio.CancelledError:
            # the step keeps running in the executor and releases on return
            self.stream.close()
            raise
        if chunk is _DONE:
            raise StopAsyncIteration
        return chunk

    def _next_chunk(self) -> Any:
        return next(self.stream, _DONE)

    async def aclose(self):
        """Close the stream and wait for an in-flight step to finish."""
        self.stream.close()
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            await asyncio.wait({pending})

    async def __aenter__(self) -> "AsyncTokenStream":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


def _close_unclaimed_stream(future: "asyncio.Future[TokenStream]"):
    # infer finished after its caller was cancelled; nobody will close it
    if not future.cancelled() and future.exception() is None:
        future.result().close()


class InferenceSession:
    """Streams completions from a ModelContext.

    A fresh Sampler, BatchBuffer and Utf8Reassembler are built for every
    `infer` call, so calls never share state. Calls against the same
    ModelContext are serialized by its gate: `timeout=0.0` rejects a
    concurrent call with ContextBusyError, a positive timeout waits that
    long, and `None` waits indefinitely.

    Example:

        with ModelContext.load("model.gguf") as model:
            session = InferenceSession(model)
            for chunk in session.infer("what is the meaning of life?", max_tokens=64):
                print(chunk, end="", flush=True)
    """

    def __init__(
        self,
        model: ModelContext,
        *,
        sampling_params: Optional[SamplingParams] = None,
        n_len: int = DEFAULT_N_LEN,
        n_batch: Optional[int] = None,
    ):
        self.model = model
        self.sampling_params = sampling_params or SamplingParams()
        self.n_len = n_len
        self.n_batch = n_batch if n_batch is not None else model.n_batch
        self._chat_formatter: Optional[ChatFormatter] = None

    def infer(
        self,
        prompt: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        *,
        timeout: Optional[float] = 0.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> TokenStream:
        """Tokenize and prefill `prompt`, then return the stream of generated text.

        Raises KVCacheTooSmallError (before any decode) or DecodingError here,
        not on the first `next()`.
        """
        if max_tokens < 0:
            raise ValueError(f"max_tokens must be non-negative, got {max_tokens}")

        gate = self.model.lock
        acquired = gate.acquire() if timeout is None else gate.acquire(timeout=timeout)
        if not acquired:
            raise ContextBusyError("Another generation is running on this model context")

        stream = None
        try:
            stream = TokenStream(
                model=self.model,
                sampling_params=self.sampling_params,
                max_tokens=max_tokens,
                n_len=self.n_len,
                n_batch=self.n_batch,
                cancel_event=cancel_event,
                release=gate.release,
            )
            stream._start(prompt)
        except BaseException:
            if stream is not None:
                stream._finish(SessionState.FAILED)
            else:
                gate.release()
            raise
        return stream

    async def ainfer(
        self,
        prompt: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        *,
        timeout: Optional[float] = 0.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> AsyncTokenStream:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            None,
            functools.partial(
                self.infer, prompt, max_tokens, timeout=timeout, cancel_event=cancel_event
            ),
        )
        try:
            stream = await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_close_unclaimed_stream)
            raise
        return AsyncTokenStream(stream)

    def complete(self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS, **kwargs) -> str:
        with self.infer(prompt, max_tokens, **kwargs) as stream:
            return "".join(stream)

    # Chat

    @property
    def chat_formatter(self) -> ChatFormatter:
        if self._chat_formatter is None:
            self._chat_formatter = ChatFormatter.from_model(self.model)
        return self._chat_formatter

    def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **kwargs,
    ) -> TokenStream:
        prompt = self.chat_formatter(messages)
        return self.infer(prompt, max_tokens, **kwargs)
