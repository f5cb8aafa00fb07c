#!/usr/bin/env python3
"""Convenience entry point for running the converter from a source checkout.

Equivalent to the ``onnx-paged-attention`` console script.
"""

from onnx_paged_attention_tool.api import *  # noqa: F401,F403
from onnx_paged_attention_tool.cli import main as _main


if __name__ == "__main__":
    raise SystemExit(_main())
