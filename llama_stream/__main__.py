"""Stream a completion from a local GGUF model.

    python -m llama_stream -m model.gguf -p "what is the meaning of life?"
"""

import argparse
import logging
import os
import sys

from llama_stream import (
    InferenceSession,
    LlamaStreamError,
    ModelContext,
    SamplingParams,
)

MODEL_ENV_VAR = "LLAMA_STREAM_MODEL"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="llama_stream", description=__doc__.splitlines()[0])
    parser.add_argument(
        "-m", "--model",
        default=os.environ.get(MODEL_ENV_VAR),
        help=f"Path to a GGUF model (default: ${MODEL_ENV_VAR})",
    )
    parser.add_argument("-p", "--prompt", default="what is the meaning of life?")
    parser.add_argument("-n", "--max-tokens", type=int, default=128)
    parser.add_argument("-c", "--ctx-size", type=int, default=2048)
    parser.add_argument("--n-len", type=int, default=1024, help="Position ceiling for one generation")
    parser.add_argument("--temp", type=float, default=SamplingParams.temp)
    parser.add_argument("--seed", type=int, default=SamplingParams.seed)
    parser.add_argument("-t", "--threads", type=int, default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.model:
        print(f"Error: no model given (use --model or set {MODEL_ENV_VAR})", file=sys.stderr)
        return 2

    try:
        with ModelContext.load(args.model, args.ctx_size, n_threads=args.threads) as model:
            session = InferenceSession(
                model,
                sampling_params=SamplingParams(temp=args.temp, seed=args.seed),
                n_len=args.n_len,
            )
            with session.infer(args.prompt, args.max_tokens) as stream:
                try:
                    for chunk in stream:
                        print(chunk, end="", flush=True)
                except KeyboardInterrupt:
                    stream.cancel()
            print()
    except LlamaStreamError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
