"""Command line interface for the SDPA -> paged-attention conversion."""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from . import __version__
from .errors import TransformationError
from .log_utils import setup_logging
from .model_io import load_model, model_external_data_locations, save_model
from .params import PagedAttentionParams, load_params_file, params_from_args
from .sdpa_to_paged import convert_model
from .validation import check_model_safe, check_paged_contract

LOGGER = logging.getLogger("onnx_paged_attention_tool.cli")

EXIT_OK = 0
EXIT_IO_ERROR = 1
EXIT_TRANSFORM_FAILED = 2
EXIT_CONTRACT_PROBLEMS = 3


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="onnx-paged-attention",
        description="Rewrite a stateful SDPA decoder ONNX model for a paged KV cache.",
    )
    ap.add_argument("input_model", help="Path to the stateful ONNX model")
    ap.add_argument("output_model", help="Where to write the converted model")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    ap.add_argument("--config", type=str, default=None, help="JSON file with transformation parameters")
    ap.add_argument("--sliding-window", type=int, default=None, help="Sliding-window size (0 = disabled)")
    ap.add_argument("--input-ids-name", type=str, default=None)
    ap.add_argument("--position-ids-name", type=str, default=None)
    ap.add_argument("--attention-mask-name", type=str, default=None)
    ap.add_argument("--beam-idx-name", type=str, default=None)

    ap.add_argument("--per-pass-validation", action="store_true", default=None,
                    help="Check for dangling references after every rewrite pass")
    ap.add_argument("--infer-shapes", action="store_true", default=None,
                    help="Run ONNX shape inference on the result (best effort)")
    ap.add_argument("--no-validate", dest="validate", action="store_false", default=None,
                    help="Skip the output-contract check")

    ap.add_argument("--external-data", action="store_true",
                    help="Save initializers as external data next to the output model")
    ap.add_argument("--load-external-data", action="store_true",
                    help="Load external initializer data of the input model")

    ap.add_argument("--log-level", type=str, default="INFO")
    ap.add_argument("--log-file", type=str, default=None)
    return ap


def resolve_params(args: argparse.Namespace) -> PagedAttentionParams:
    """Config file first, then explicit CLI flags on top."""
    base = PagedAttentionParams()
    if args.config:
        base = load_params_file(args.config, base=base)
    return params_from_args(args, base=base)


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        params = resolve_params(args)
    except (OSError, ValueError) as e:
        ap.error(str(e))

    try:
        model = load_model(args.input_model, load_external_data=args.load_external_data)
    except Exception as e:  # protobuf DecodeError for corrupt files
        LOGGER.error("Could not load %s: %s", args.input_model, e)
        return EXIT_IO_ERROR

    if not args.load_external_data:
        locs = model_external_data_locations(model)
        if locs and not args.external_data:
            LOGGER.warning(
                "Input model references external data (%s) that was not loaded; "
                "the output will keep pointing at it",
                ", ".join(locs),
            )

    try:
        out = convert_model(model, params)
    except TransformationError as e:
        LOGGER.error("%s", e)
        return EXIT_TRANSFORM_FAILED

    rc = EXIT_OK
    if params.validate:
        problems = check_paged_contract(out, params)
        for p in problems:
            LOGGER.error("Contract: %s", p)
        if problems:
            rc = EXIT_CONTRACT_PROBLEMS
        msg = check_model_safe(out)
        if msg:
            LOGGER.debug("onnx.checker (ignored): %s", msg)

    try:
        save_model(out, args.output_model, external_data=args.external_data)
    except (OSError, ValueError) as e:
        LOGGER.error("Could not save %s: %s", args.output_model, e)
        return EXIT_IO_ERROR

    LOGGER.info("Wrote %s", args.output_model)
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
