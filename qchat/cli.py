"""
qchat :: CLI

Usage:
    qchat list [--models models.toml]
    qchat resolve <model_id>
    qchat chat <model_id> [--temperature 0.8] [--top-p 0.9] [--system "..."]

Examples:
    qchat chat qwen3            → default qwen3 variant
    qchat chat qwen3.4b_q4      → quantized 4B

Inside chat: empty line or /exit quits, /reset clears the history.

INL - 2025
"""

import argparse
import asyncio
import sys

from qchat.core.errors import QChatError, ResolutionError
from qchat.core.logging import setup_logging


def _default_device() -> str:
    import torch

    return "cuda" if torch.cuda.is_available() else "cpu"


def cmd_list(args):
    """List the model table with resolved specs."""
    from qchat.core.registry import ModelRegistry

    models = ModelRegistry.from_file(args.models).list_models()
    if not models:
        print("No models configured.")
        return

    print(f"{'Model':<28} {'Format':<10} {'Default':<8} {'Weights':<40} {'Tokenizer'}")
    print("-" * 110)
    for model_id, spec in models:
        if isinstance(spec, ResolutionError):
            print(f"{model_id:<28} {'-':<10} {'-':<8} ERROR: {spec}")
            continue
        default = "yes" if spec.is_default else ""
        weights = f"{spec.model_repo}/{spec.model_file}"
        print(f"{model_id:<28} {spec.format.value:<10} {default:<8} {weights:<40} {spec.tokenizer_repo}")


def cmd_resolve(args):
    """Resolve one identifier and print where its weights and tokenizer come from."""
    from qchat.core.registry import ModelRegistry

    spec = ModelRegistry.from_file(args.models).get(args.model)
    print(f"Model:       {spec.model_id}")
    print(f"Arch:        {spec.architecture.value}")
    print(f"Format:      {spec.format.value}")
    print(f"Weights:     {spec.model_repo} ({spec.model_file})")
    print(f"Tokenizer:   {spec.tokenizer_repo}")
    print(f"Default:     {spec.is_default}")


def build_config(args):
    from qchat.core.sampling import InferenceConfig

    return InferenceConfig(
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        repeat_penalty=args.repeat_penalty,
        repeat_last_n=args.repeat_last_n,
        top_k=args.top_k,
        top_p=args.top_p,
        seed=args.seed,
    )


async def _chat_loop(session):
    while True:
        try:
            line = input("\n>>> ")
        except EOFError:
            break
        message = line.strip()
        if not message or message == "/exit":
            break
        if message == "/reset":
            session.reset()
            print("(history cleared)")
            continue

        async for piece in session.chat(message):
            print(piece, end="", flush=True)
        print()


def cmd_chat(args):
    """Interactive chat."""
    from qchat.core.metrics import ChatMetrics
    from qchat.engine.chat import ChatSession

    device = args.device or _default_device()
    metrics = ChatMetrics(port=args.metrics_port) if args.metrics_port else None

    session = ChatSession.from_model_id(
        args.model,
        config=build_config(args),
        table=args.models,
        device=device,
        system_prompt=args.system,
        keep_reasoning=args.keep_reasoning,
        metrics=metrics,
    )
    print(f"qchat :: {args.model} on {device}. Empty line or /exit to quit, /reset to clear history.")
    asyncio.run(_chat_loop(session))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qchat",
        description="Local multi-turn chat over quantized or full-precision models",
    )
    parser.add_argument("--models", default="models.toml", help="Path to the model table")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    parser.add_argument("--log-file", default=None, help="Also write JSON log lines to this file")
    sub = parser.add_subparsers(dest="command")

    # list
    p_list = sub.add_parser("list", help="List configured models")
    p_list.set_defaults(func=cmd_list)

    # resolve
    p_resolve = sub.add_parser("resolve", help="Resolve a model identifier")
    p_resolve.add_argument("model", help="Model id (e.g. qwen3 or qwen3.4b_q4)")
    p_resolve.set_defaults(func=cmd_resolve)

    # chat
    p_chat = sub.add_parser("chat", help="Interactive chat")
    p_chat.add_argument("model", help="Model id (e.g. qwen3 or qwen3.4b_q4)")
    p_chat.add_argument("--temperature", type=float, default=0.8)
    p_chat.add_argument("--top-k", type=int, default=None)
    p_chat.add_argument("--top-p", type=float, default=None)
    p_chat.add_argument("--max-tokens", type=int, default=1000)
    p_chat.add_argument("--repeat-penalty", type=float, default=1.1)
    p_chat.add_argument("--repeat-last-n", type=int, default=64)
    p_chat.add_argument("--seed", type=int, default=299792458)
    p_chat.add_argument("--system", default=None, help="System prompt")
    p_chat.add_argument("--device", default=None, help="cpu / cuda (default: auto)")
    p_chat.add_argument("--keep-reasoning", action="store_true",
                        help="Keep reasoning segments in the conversation history")
    p_chat.add_argument("--metrics-port", type=int, default=None,
                        help="Expose Prometheus metrics on this port")
    p_chat.set_defaults(func=cmd_chat)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    logger = setup_logging(args.log_level, json_output=args.json_logs, log_file=args.log_file)
    try:
        args.func(args)
    except (QChatError, ValueError) as e:
        logger.error(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
