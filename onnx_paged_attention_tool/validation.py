"""Checks for the paged-attention input contract.

The serving engine binds the trailing inputs positionally, so the order of the
graph inputs is part of the contract, not just their names.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

import onnx
from onnx import TensorProto

from .graph_model import Graph
from .onnx_utils import elemtype_from_vi, shape_from_vi
from .opset import STATE_DOMAIN
from .params import (
    KEY_CACHE_PREFIX,
    MAX_CONTEXT_LEN,
    SCHEDULING_INPUTS,
    SCHEDULING_VECTOR_INPUTS,
    VALUE_CACHE_PREFIX,
    PagedAttentionParams,
)

LOGGER = logging.getLogger("onnx_paged_attention_tool.validation")

_KV_RE = re.compile(rf"^({KEY_CACHE_PREFIX}|{VALUE_CACHE_PREFIX})\.(\d+)$")


def check_paged_contract(model: onnx.ModelProto, params: Optional[PagedAttentionParams] = None) -> List[str]:
    """Return a list of contract violations (empty when the model conforms)."""
    params = params or PagedAttentionParams()
    graph = Graph(model, name_nodes=False)
    problems: List[str] = []

    stateful = [n.name for n in graph.nodes() if (n.domain or "") == STATE_DOMAIN]
    if graph.sinks():
        problems.append(f"{len(graph.sinks())} state sink(s) remain")
    if stateful:
        problems.append(f"{len(stateful)} stateful node(s) remain, e.g. {stateful[0]}")

    params_vi = graph.parameters()
    names = [vi.name for vi in params_vi]
    for forbidden in (params.attention_mask_name, params.beam_idx_name):
        if forbidden in names:
            problems.append(f"input '{forbidden}' is still present")

    first_kv = next(
        (i for i, n in enumerate(names) if _KV_RE.match(n) or n in SCHEDULING_INPUTS),
        len(names),
    )
    leading = names[:first_kv]
    expected_leading = {params.input_ids_name, params.position_ids_name}
    if set(leading) != expected_leading or len(leading) != len(expected_leading):
        problems.append(f"leading inputs are {leading}, expected {sorted(expected_leading)}")

    trailing_len = len(SCHEDULING_INPUTS)
    trailing = names[-trailing_len:] if len(names) >= trailing_len else names
    if tuple(trailing) != SCHEDULING_INPUTS:
        problems.append(f"trailing inputs are {trailing}, expected {list(SCHEDULING_INPUTS)}")

    kv_names = names[first_kv: len(names) - trailing_len]
    problems.extend(_check_kv_names(kv_names))

    by_name = {vi.name: vi for vi in params_vi}
    for name in SCHEDULING_VECTOR_INPUTS:
        problems.extend(_check_type(by_name.get(name), TensorProto.INT32, 1))
    problems.extend(_check_type(by_name.get(MAX_CONTEXT_LEN), TensorProto.INT32, 0))
    problems.extend(_check_type(by_name.get(params.position_ids_name), None, 1))
    problems.extend(_check_type(by_name.get(params.input_ids_name), None, 1))

    for consumer, tensor in graph.dangling_references():
        problems.append(f"'{consumer}' reads undefined tensor '{tensor}'")

    for p in problems:
        LOGGER.debug("contract: %s", p)
    return problems


def _check_kv_names(kv_names: List[str]) -> List[str]:
    if len(kv_names) % 2:
        return [f"odd number of KV cache inputs ({len(kv_names)})"]
    expected = []
    for layer in range(len(kv_names) // 2):
        expected += [f"{KEY_CACHE_PREFIX}.{layer}", f"{VALUE_CACHE_PREFIX}.{layer}"]
    if kv_names != expected:
        return [f"KV cache inputs are {kv_names}, expected {expected}"]
    return []


def _check_type(vi: Optional[onnx.ValueInfoProto], elem_type: Optional[int], rank: int) -> List[str]:
    if vi is None:
        return []
    out = []
    if elem_type is not None and elemtype_from_vi(vi) != elem_type:
        out.append(f"input '{vi.name}' has element type {elemtype_from_vi(vi)}, expected {elem_type}")
    shape = shape_from_vi(vi)
    if shape is None or len(shape) != rank:
        out.append(f"input '{vi.name}' has shape {shape}, expected rank {rank}")
    return out


def check_model_safe(model: onnx.ModelProto) -> Optional[str]:
    """Run `onnx.checker`; return the error message or None.

    Custom-domain ops have no schema and are not checked beyond their structure.
    """
    try:
        onnx.checker.check_model(model)
    except onnx.checker.ValidationError as e:
        return str(e)
    return None
