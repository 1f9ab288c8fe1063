"""Main entry point for streamnorm."""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from streamnorm.app.stream_service import run_worker
from streamnorm.config import Config
from streamnorm.logging_config import configure_logging
from streamnorm.normalizer.encoder import error_body
from streamnorm.normalizer.errors import UpstreamStreamError
from streamnorm.normalizer.pipeline import StreamMode, normalize_stream
from streamnorm.ui.preview import CanonicalPreview

logger = logging.getLogger(__name__)


def _read_chunks(source: BinaryIO, chunk_size: int, capture: Optional[BinaryIO] = None) -> Iterator[bytes]:
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return
        if capture is not None:
            capture.write(chunk)
        yield chunk


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamnorm",
        description="Normalize an upstream LLM event stream into canonical events.",
    )
    parser.add_argument("input", nargs="?", help="Upstream stream capture to read (default: stdin).")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml.")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in StreamMode],
        default=None,
        help="normalize (default) or passthrough.",
    )
    parser.add_argument("--chunk-size", type=int, default=None, help="Bytes per upstream read.")
    parser.add_argument("--preview", action="store_true", help="Render the visible answer on stderr.")
    parser.add_argument("--capture", type=Path, default=None, help="Also write raw upstream bytes here.")
    parser.add_argument("--worker-stdio", action="store_true", help="Serve the JSON-RPC worker over stdio.")
    return parser


def _run_cli(args: argparse.Namespace, config: Config) -> int:
    mode = StreamMode.from_value(args.mode or config.stream.default_mode)
    chunk_size = args.chunk_size if args.chunk_size and args.chunk_size > 0 else config.stream.read_chunk_size
    out = sys.stdout.buffer

    with ExitStack() as stack:
        source: BinaryIO = (
            stack.enter_context(open(args.input, "rb")) if args.input else sys.stdin.buffer
        )
        capture = stack.enter_context(open(args.capture, "wb")) if args.capture else None
        preview = stack.enter_context(CanonicalPreview()) if args.preview and mode == StreamMode.NORMALIZE else None

        try:
            for encoded in normalize_stream(
                _read_chunks(source, chunk_size, capture),
                mode=mode,
                normalizer_cfg=config.normalizer,
            ):
                out.write(encoded)
                out.flush()
                if preview is not None:
                    preview.feed(encoded)
        except UpstreamStreamError:
            logger.exception("Stream normalization failed")
            out.write(error_body() + b"\n")
            out.flush()
            return 1
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = _build_parser().parse_args(argv)
    config = Config(config_path=args.config)
    configure_logging(config)

    try:
        if args.worker_stdio:
            run_worker(config=config)
            return
        exit_code = _run_cli(args, config)
    except KeyboardInterrupt:
        raise SystemExit(130)
    except BrokenPipeError:
        # Downstream consumer went away; stop reading upstream.
        raise SystemExit(0)

    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
