"""Structural matchers shared by the rewrite passes.

Every matcher either returns a description of what it found or raises
`PatternMismatch`. Traversals only follow a closed set of op types per pattern.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

import onnx

from ..errors import PatternMismatch
from ..graph_model import BindingKind, Graph
from ..onnx_utils import get_attr, shape_from_vi
from ..opset import is_read_value, variable_id

# Ops between a state read and its Concat: beam reordering and dtype conversion.
PAST_TRANSPARENT_OPS: FrozenSet[str] = frozenset({"Gather", "Cast", "Identity"})

# Ops between the present-KV Concat and SDPA (grouped-query head broadcast).
PRESENT_TRANSPARENT_OPS: FrozenSet[str] = frozenset({"Unsqueeze", "Expand", "Reshape", "Identity"})

# Sequence axis of [batch, heads, seq, head_size] KV tensors.
KV_SEQ_AXES = (2, -2)
KV_RANK = 4


def _is_default_domain(node: onnx.NodeProto) -> bool:
    return (node.domain or "") in ("", "ai.onnx")


@dataclass(frozen=True)
class KvSource:
    """Where a past KV tensor comes from."""

    kind: str  # "state" or "parameter"
    tensor: str
    variable: str
    read_value: Optional[str] = None

    @property
    def is_state(self) -> bool:
        return self.kind == "state"


@dataclass(frozen=True)
class CachedKv:
    """A present-KV Concat fed by a past source and the current step's tensor."""

    concat: onnx.NodeProto
    past: KvSource
    current: str


@dataclass(frozen=True)
class ShapeRead:
    """A read of one dimension of `source`'s shape."""

    node: onnx.NodeProto
    source: str
    axis: int
    keep_dims: bool  # True: 1-D [1] result, False: scalar


def past_kv_source(graph: Graph, tensor: str) -> KvSource:
    """Trace `tensor` up to a `ReadValue` or a graph Parameter."""
    cur = tensor
    for _ in range(8):
        binding = graph.resolve(cur)
        if binding.kind is BindingKind.PARAMETER:
            shape = shape_from_vi(binding.value_info)
            if shape is None or len(shape) != KV_RANK:
                raise PatternMismatch(f"Parameter '{cur}' is not a rank-{KV_RANK} KV tensor")
            return KvSource("parameter", cur, cur)
        if binding.kind is not BindingKind.NODE_OUTPUT:
            raise PatternMismatch(f"past KV '{tensor}' comes from a {binding.describe()}")
        prod = binding.producer
        if is_read_value(prod):
            return KvSource("state", cur, variable_id(prod), read_value=prod.name)
        if _is_default_domain(prod) and prod.op_type in PAST_TRANSPARENT_OPS and prod.input:
            cur = prod.input[0]
            continue
        raise PatternMismatch(f"past KV '{tensor}' is produced by {prod.op_type}")
    raise PatternMismatch(f"past KV '{tensor}' is too deep")


def present_concat(graph: Graph, tensor: str) -> onnx.NodeProto:
    """Trace an SDPA key/value input back to its sequence-axis Concat."""
    cur = tensor
    for _ in range(8):
        prod = graph.producer(cur)
        if prod is None or not _is_default_domain(prod):
            raise PatternMismatch(f"'{tensor}' is not produced by a KV Concat")
        if prod.op_type == "Concat":
            if get_attr(prod, "axis") not in KV_SEQ_AXES or len(prod.input) != 2:
                raise PatternMismatch(f"Concat '{prod.name}' is not a sequence-axis KV append")
            return prod
        if prod.op_type in PRESENT_TRANSPARENT_OPS and prod.input:
            cur = prod.input[0]
            continue
        raise PatternMismatch(f"'{tensor}' is produced by {prod.op_type}")
    raise PatternMismatch(f"'{tensor}' is too deep below its KV Concat")


def match_cached_kv(graph: Graph, tensor: str) -> CachedKv:
    concat = present_concat(graph, tensor)
    return CachedKv(concat=concat, past=past_kv_source(graph, concat.input[0]), current=concat.input[1])


def _scalar_int(graph: Graph, name: str) -> Optional[int]:
    val = graph.constant_value(name) if name else None
    if val is None or val.size != 1:
        return None
    return int(val.reshape(-1)[0])


def _selects_one_dim(start: int, end: Optional[int]) -> bool:
    if start == -1:
        return end is None or end >= 2**31 - 1
    return end is not None and end == start + 1


def match_shape_read(graph: Graph, node: onnx.NodeProto) -> Optional[ShapeRead]:
    """Recognize single-dimension shape reads; return None for anything else.

    Supported forms::

        Gather(Shape(x), k)            -> scalar
        Slice(Shape(x), [k], [k + 1])  -> [1]
        Shape(x, start=k, end=k + 1)   -> [1]
    """
    if not _is_default_domain(node):
        return None

    if node.op_type == "Shape":
        start = get_attr(node, "start")
        if start is None or not _selects_one_dim(int(start), get_attr(node, "end")):
            return None
        return ShapeRead(node, node.input[0], int(start), True)

    if node.op_type not in ("Gather", "Slice") or len(node.input) < 2:
        return None
    shape_node = graph.producer(node.input[0])
    if shape_node is None or shape_node.op_type != "Shape" or not _is_default_domain(shape_node):
        return None
    if get_attr(shape_node, "start") is not None or get_attr(shape_node, "end") is not None:
        return None

    if node.op_type == "Gather":
        if int(get_attr(node, "axis", 0)) != 0:
            return None
        idx = graph.constant_value(node.input[1])
        if idx is None or idx.ndim != 0:
            return None
        return ShapeRead(node, shape_node.input[0], int(idx), False)

    if len(node.input) < 3:
        return None
    start = _scalar_int(graph, node.input[1])
    end = _scalar_int(graph, node.input[2])
    if len(node.input) > 3 and node.input[3] and _scalar_int(graph, node.input[3]) not in (0, -1):
        return None
    if len(node.input) > 4 and node.input[4] and _scalar_int(graph, node.input[4]) != 1:
        return None
    if start is None or not _selects_one_dim(start, end):
        return None
    return ShapeRead(node, shape_node.input[0], start, True)
