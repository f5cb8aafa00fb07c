"""Transformation parameters and their CLI/JSON mapping."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

# Names of the scheduling-metadata inputs consumed by the paged-attention engine.
MAX_CONTEXT_LEN = "max_context_len"
CONTEXT_LENS = "context_lens"
SUBSEQUENCE_BEGINS = "subsequence_begins"
BLOCK_INDICES = "block_indices"
BLOCK_INDICES_BEGINS = "block_indices_begins"

# Order in which the vector inputs are appended after the per-layer KV inputs.
SCHEDULING_VECTOR_INPUTS: Tuple[str, ...] = (
    CONTEXT_LENS,
    SUBSEQUENCE_BEGINS,
    BLOCK_INDICES,
    BLOCK_INDICES_BEGINS,
)
SCHEDULING_INPUTS: Tuple[str, ...] = SCHEDULING_VECTOR_INPUTS + (MAX_CONTEXT_LEN,)

KEY_CACHE_PREFIX = "key_cache"
VALUE_CACHE_PREFIX = "value_cache"


@dataclass(frozen=True)
class PagedAttentionParams:
    input_ids_name: str = "input_ids"
    position_ids_name: str = "position_ids"
    attention_mask_name: str = "attention_mask"
    beam_idx_name: str = "beam_idx"

    # 0 disables sliding-window attention.
    sliding_window: int = 0

    per_pass_validation: bool = False
    infer_shapes: bool = False
    validate: bool = True


def params_from_dict(data: Mapping[str, Any], *, base: Optional[PagedAttentionParams] = None) -> PagedAttentionParams:
    """Build params from a mapping, rejecting unknown keys and wrong types."""
    base = base or PagedAttentionParams()
    fields = {f.name: f for f in dataclasses.fields(PagedAttentionParams)}
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise ValueError(f"Unknown parameter(s): {', '.join(unknown)}")

    updates: Dict[str, Any] = {}
    for key, value in data.items():
        expected = type(getattr(base, key))
        if expected is bool:
            if not isinstance(value, bool):
                raise ValueError(f"Parameter '{key}' must be a boolean, got {value!r}")
        elif expected is int:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"Parameter '{key}' must be an integer, got {value!r}")
            if key == "sliding_window" and value < 0:
                raise ValueError("Parameter 'sliding_window' must be >= 0")
        elif expected is str:
            if not isinstance(value, str) or not value:
                raise ValueError(f"Parameter '{key}' must be a non-empty string, got {value!r}")
        updates[key] = value
    return dataclasses.replace(base, **updates)


def load_params_file(path: Union[str, Path], *, base: Optional[PagedAttentionParams] = None) -> PagedAttentionParams:
    p = Path(path)
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{p}: config root is not an object")
    return params_from_dict(data, base=base)


# CLI attribute -> parameter name. Attributes left at None do not override.
CLI_TO_PARAM: Dict[str, str] = {
    "input_ids_name": "input_ids_name",
    "position_ids_name": "position_ids_name",
    "attention_mask_name": "attention_mask_name",
    "beam_idx_name": "beam_idx_name",
    "sliding_window": "sliding_window",
    "per_pass_validation": "per_pass_validation",
    "infer_shapes": "infer_shapes",
    "validate": "validate",
}


def params_from_args(args, *, base: Optional[PagedAttentionParams] = None) -> PagedAttentionParams:
    patch = {}
    for attr, key in CLI_TO_PARAM.items():
        value = getattr(args, attr, None)
        if value is not None:
            patch[key] = value
    return params_from_dict(patch, base=base)
