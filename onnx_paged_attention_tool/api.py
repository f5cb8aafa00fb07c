"""Public API surface.

Scripts can import everything they need from this one module.
"""

from __future__ import annotations

from . import __version__

from .errors import PatternMismatch, TransformationError
from .graph_model import Binding, BindingKind, Graph
from .log_utils import setup_logging
from .model_io import infer_shapes_safe, load_model, save_model
from .params import (
    SCHEDULING_INPUTS,
    PagedAttentionParams,
    load_params_file,
    params_from_dict,
)
from .sdpa_to_paged import SDPAToPagedAttention, convert_model, sdpa_to_paged_attention
from .validation import check_model_safe, check_paged_contract

__all__ = [
    "__version__",
    "PatternMismatch",
    "TransformationError",
    "Binding",
    "BindingKind",
    "Graph",
    "setup_logging",
    "infer_shapes_safe",
    "load_model",
    "save_model",
    "SCHEDULING_INPUTS",
    "PagedAttentionParams",
    "load_params_file",
    "params_from_dict",
    "SDPAToPagedAttention",
    "convert_model",
    "sdpa_to_paged_attention",
    "check_model_safe",
    "check_paged_contract",
]
