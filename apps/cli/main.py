"""`pocketlm`: local chat CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from apps.cli.chat_repl import chat_repl
from pocketlm.engine.errors import PocketLMError
from pocketlm.engine.registry import list_backends
from pocketlm.engine.types import InferenceParams, MultimodalParams


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pocketlm", description="On-device chat with streaming decode")
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: %(default)s)",
    )

    sub = p.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Chat REPL")
    chat.add_argument("--model", required=True, help="Model path or HF repo id")
    chat.add_argument(
        "--backend",
        default="transformers",
        choices=list_backends(),
        help="Inference backend (default: %(default)s)",
    )
    chat.add_argument("--min-p", type=float, default=0.1, help="Min-p sampling threshold (default: 0.1)")
    chat.add_argument("--temperature", type=float, default=0.8, help="Sampling temperature (default: 0.8)")
    chat.add_argument(
        "--context-size",
        type=int,
        default=None,
        help="Context window in tokens (default: the model's trained length)",
    )
    chat.add_argument("--chat-template", type=Path, default=None, help="File with a Jinja chat template")
    chat.add_argument("--threads", type=int, default=4, help="CPU threads (default: 4)")
    chat.add_argument(
        "--no-store-chats",
        action="store_true",
        help="Answer every prompt without earlier turns",
    )
    chat.add_argument("--no-mmap", action="store_true", help="Disable memory-mapped weights where supported")
    chat.add_argument("--mlock", action="store_true", help="Lock weights in memory where supported")
    chat.add_argument("--device", type=str, default=None, help="Torch device (default: auto)")
    chat.add_argument("--dtype", type=str, default=None, help="Torch dtype: float16|bfloat16|float32")
    chat.add_argument("--seed", type=int, default=None, help="Sampler seed")
    chat.add_argument("--system-prompt", type=str, default=None, help="System prompt for the session")

    describe = sub.add_parser("describe", help="Describe images with a vision-language model")
    describe.add_argument("--model", required=True, help="Model path or HF repo id")
    describe.add_argument("--processor", default=None, help="Processor path (default: --model)")
    describe.add_argument(
        "--image",
        action="append",
        required=True,
        type=Path,
        help="Image file; repeat for several frames",
    )
    describe.add_argument("--prompt", default="Describe this image.", help="Text prompt (default: %(default)s)")
    describe.add_argument("--min-p", type=float, default=0.05, help="Min-p sampling threshold (default: 0.05)")
    describe.add_argument("--temperature", type=float, default=0.2, help="Sampling temperature (default: 0.2)")
    describe.add_argument("--context-size", type=int, default=None, help="Context window in tokens")
    describe.add_argument("--threads", type=int, default=4, help="CPU threads (default: 4)")
    describe.add_argument(
        "--n-gpu-layers",
        type=int,
        default=35,
        help="0 keeps the model on CPU (default: 35)",
    )
    describe.add_argument("--device", type=str, default=None, help="Torch device (default: auto)")
    describe.add_argument("--dtype", type=str, default=None, help="Torch dtype: float16|bfloat16|float32")
    describe.add_argument("--seed", type=int, default=None, help="Sampler seed")

    return p


def load_frame(path: Path) -> tuple[bytes, int, int]:
    """Read an image file as packed RGB bytes plus its width and height."""
    from PIL import Image

    with Image.open(path) as img:
        rgb = img.convert("RGB")
        return rgb.tobytes(), rgb.width, rgb.height


def inference_params_from_args(args: argparse.Namespace) -> InferenceParams:
    template = args.chat_template.read_text(encoding="utf-8") if args.chat_template else None
    return InferenceParams(
        min_p=args.min_p,
        temperature=args.temperature,
        store_chats=not args.no_store_chats,
        context_size=args.context_size,
        chat_template=template,
        n_threads=args.threads,
        use_mmap=not args.no_mmap,
        use_mlock=bool(args.mlock),
        device=args.device,
        dtype=args.dtype,
        seed=args.seed,
    )


def multimodal_params_from_args(args: argparse.Namespace) -> MultimodalParams:
    return MultimodalParams(
        mmproj_path=args.processor,
        min_p=args.min_p,
        temperature=args.temperature,
        n_gpu_layers=args.n_gpu_layers,
        context_size=args.context_size,
        n_threads=args.threads,
        device=args.device,
        dtype=args.dtype,
        seed=args.seed,
    )


def _describe(args: argparse.Namespace) -> int:
    from pocketlm.engine.session import MultimodalSession

    frames = []
    for path in args.image:
        try:
            frames.append(load_frame(path))
        except OSError as exc:
            print(f"error: cannot read image {path}: {exc}", file=sys.stderr)
            return 2

    with MultimodalSession.load(args.model, multimodal_params_from_args(args)) as session:
        for pixels, width, height in frames:
            session.add_frame_rgb(pixels, width, height)
        if not session.build(args.prompt):
            print("error: failed to evaluate the images (see log for details)", file=sys.stderr)
            return 1
        for piece in session.stream_response():
            print(piece, end="", flush=True)
        print()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 2

    try:
        if args.command == "chat":
            from pocketlm.engine.session import ChatSession

            params = inference_params_from_args(args)
            params.validate()
            return chat_repl(
                session_factory=lambda: ChatSession.load(args.model, params, backend=args.backend),
                system_prompt=args.system_prompt,
                model_label=args.model,
            )
        if args.command == "describe":
            multimodal_params_from_args(args).validate()
            return _describe(args)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except PocketLMError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
