"""Custom-domain operators used by stateful and paged-attention graphs.

Stateful graphs model the KV cache with a pair of `ai.stateful` operators:

- ``ReadValue(init?) -> state``: reads the value persisted by the previous call.
- ``Assign(value)``: persists `value` for the next call. It has no outputs and
  therefore acts as a graph *sink*.

Both carry a string ``variable_id`` attribute pairing a read with its write.

Dense attention is expressed as ``ai.paged::ScaledDotProductAttention``
(``query, key, value[, attention_mask[, scale]]``, all ``[batch, heads, seq, head]``).
The rewritten graph uses ``ai.paged::PagedAttentionExtension`` whose input order is
fixed by the serving engine (see `PAGED_ATTENTION_INPUTS`).
"""

from __future__ import annotations

from typing import Optional, Sequence

import onnx
from onnx import helper

from .onnx_utils import get_attr

STATE_DOMAIN = "ai.stateful"
PAGED_DOMAIN = "ai.paged"
CUSTOM_OPSET_VERSION = 1

READ_VALUE = "ReadValue"
ASSIGN = "Assign"
SDPA = "ScaledDotProductAttention"
PAGED_ATTENTION = "PagedAttentionExtension"

PAGED_ATTENTION_INPUTS = (
    "query",
    "key",
    "value",
    "key_cache",
    "value_cache",
    "context_lens",
    "subsequence_begins",
    "block_indices",
    "block_indices_begins",
    "scale",
    "sliding_window",
    "alibi_slopes",
    "max_context_len",
)


def is_op(node: Optional[onnx.NodeProto], op_type: str, domain: str = "") -> bool:
    if node is None:
        return False
    node_domain = node.domain or ""
    if domain in ("", "ai.onnx"):
        return node.op_type == op_type and node_domain in ("", "ai.onnx")
    return node.op_type == op_type and node_domain == domain


def is_read_value(node: Optional[onnx.NodeProto]) -> bool:
    return is_op(node, READ_VALUE, STATE_DOMAIN)


def is_assign(node: Optional[onnx.NodeProto]) -> bool:
    return is_op(node, ASSIGN, STATE_DOMAIN)


def is_sdpa(node: Optional[onnx.NodeProto]) -> bool:
    return is_op(node, SDPA, PAGED_DOMAIN)


def variable_id(node: onnx.NodeProto) -> str:
    return str(get_attr(node, "variable_id", "") or "")


def make_read_value(output: str, variable: str, *, init: Optional[str] = None, name: Optional[str] = None) -> onnx.NodeProto:
    return helper.make_node(
        READ_VALUE,
        [init] if init else [],
        [output],
        name=name or f"ReadValue_{variable}",
        domain=STATE_DOMAIN,
        variable_id=variable,
    )


def make_assign(value: str, variable: str, *, name: Optional[str] = None) -> onnx.NodeProto:
    return helper.make_node(
        ASSIGN,
        [value],
        [],
        name=name or f"Assign_{variable}",
        domain=STATE_DOMAIN,
        variable_id=variable,
    )


def make_sdpa(inputs: Sequence[str], output: str, *, name: Optional[str] = None, causal: bool = True) -> onnx.NodeProto:
    return helper.make_node(
        SDPA,
        list(inputs),
        [output],
        name=name,
        domain=PAGED_DOMAIN,
        is_causal=int(bool(causal)),
    )


def make_paged_attention(inputs: Sequence[str], output: str, *, name: Optional[str] = None) -> onnx.NodeProto:
    if len(inputs) != len(PAGED_ATTENTION_INPUTS):
        raise ValueError(
            f"{PAGED_ATTENTION} expects {len(PAGED_ATTENTION_INPUTS)} inputs, got {len(inputs)}"
        )
    return helper.make_node(PAGED_ATTENTION, list(inputs), [output], name=name, domain=PAGED_DOMAIN)
