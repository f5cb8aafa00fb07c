"""ONNX SDPA -> paged-attention graph surgery."""

__version__ = "0.1.0"
