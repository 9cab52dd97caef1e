from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import BinaryIO, List, Optional

from . import backend, json_stream
from .accessor import KEY_BUFFER_SIZE, VALUE_BUFFER_SIZE, MetadataAccessor


class UsageError(Exception):
    pass


class JsonArgumentParser(argparse.ArgumentParser):
    """
    ArgumentParser that raises instead of printing usage and exiting with 2,
    so every failure can be reported as a JSON error object.
    """

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def configure_logging(level_str: str) -> None:
    level = getattr(logging, level_str.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s - %(message)s",
    )


def _buffer_size(value: str) -> int:
    size = int(value)
    if size < 0:
        raise argparse.ArgumentTypeError(f"buffer size must be >= 0, got {size}")
    return size


def build_arg_parser(prog: Optional[str] = None) -> JsonArgumentParser:
    p = JsonArgumentParser(
        prog=prog or os.path.basename(sys.argv[0]),
        description="Print the metadata of a GGUF model file as a JSON object.",
        epilog="Use -- before a model path that starts with a dash: %(prog)s -- -model.gguf",
    )
    p.add_argument("model_path", nargs="?", help="Path to a GGUF model file.")
    p.add_argument(
        "--key-size",
        type=_buffer_size,
        default=KEY_BUFFER_SIZE,
        help="Key buffer size in bytes, terminator included; 0 for no limit. Default: %(default)s",
    )
    p.add_argument(
        "--value-size",
        type=_buffer_size,
        default=VALUE_BUFFER_SIZE,
        help="Value buffer size in bytes, terminator included; 0 for no limit. Default: %(default)s",
    )
    p.add_argument("--log-level", default="WARNING", help="Logging level: DEBUG, INFO, WARNING, ERROR.")
    return p


def usage_message(prog: str) -> str:
    return f"Usage: {prog} <model_path>"


def _detach_stdout(out: BinaryIO) -> None:
    """
    Point the stdout descriptor at devnull so the interpreter's final flush
    does not fail again on the closed pipe.
    """
    if out is not getattr(sys.stdout, "buffer", None):
        return
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, sys.stdout.fileno())


def handle_model(args: argparse.Namespace, out: BinaryIO, err: BinaryIO) -> int:
    log = logging.getLogger("cli.model")
    params = backend.default_model_params()
    params.vocab_only = True

    with backend.backend_session():
        with backend.model_session(args.model_path, params) as model:
            if model is None:
                path = os.fsencode(args.model_path)
                json_stream.write_error(err, b"Failed to load model metadata from " + path)
                return 1

            accessor = MetadataAccessor(
                model,
                key_size=args.key_size or None,
                value_size=args.value_size or None,
            )
            try:
                written = json_stream.write_object(out, accessor.entries())
                out.write(b"\n")
                out.flush()
            except BrokenPipeError:
                log.debug("Output closed early for %s", args.model_path)
                _detach_stdout(out)
                return 1
            log.debug("Wrote %d metadata fields for %s", written, args.model_path)
    return 0


def run(
    argv: Optional[List[str]] = None,
    out: Optional[BinaryIO] = None,
    err: Optional[BinaryIO] = None,
    prog: Optional[str] = None,
) -> int:
    out = out if out is not None else sys.stdout.buffer
    err = err if err is not None else sys.stderr.buffer

    parser = build_arg_parser(prog)
    try:
        args = parser.parse_args(argv)
    except UsageError as e:
        json_stream.write_error(err, f"{e}. {usage_message(parser.prog)}".encode("utf-8"))
        return 1

    if args.model_path is None:
        json_stream.write_error(err, usage_message(parser.prog).encode("utf-8"))
        return 1

    configure_logging(args.log_level)
    return handle_model(args, out, err)


def main(argv: Optional[List[str]] = None) -> None:
    sys.exit(run(argv))
