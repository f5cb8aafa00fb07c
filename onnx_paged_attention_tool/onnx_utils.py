"""ONNX graph parsing helpers.

Includes:
- dtype/shape helpers
- producer/consumer maps
- topological sort
- attribute access
- layer index extraction from exporter naming conventions
"""

from __future__ import annotations

import re
from collections import defaultdict, deque
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import onnx
from onnx import TensorProto, helper


# ---------------------------- ValueInfo helpers ----------------------------

def shape_from_vi(vi) -> Optional[List[Optional[int]]]:
    if vi is None or not vi.type.HasField("tensor_type"):
        return None
    if not vi.type.tensor_type.HasField("shape"):
        return None
    shp: List[Optional[int]] = []
    for d in vi.type.tensor_type.shape.dim:
        shp.append(int(d.dim_value) if d.HasField("dim_value") else None)
    return shp


def elemtype_from_vi(vi) -> Optional[int]:
    if vi is None or not vi.type.HasField("tensor_type"):
        return None
    et = int(vi.type.tensor_type.elem_type)
    return et if et != TensorProto.UNDEFINED else None


def set_partial_shape(vi: onnx.ValueInfoProto, shape: Sequence[Optional[int]]) -> None:
    """Overwrite the shape of a tensor ValueInfo in place.

    `None` entries become dynamic dimensions (neither dim_value nor dim_param set).
    """
    tt = vi.type.tensor_type
    tt.shape.Clear()
    # Clear() on an unset submessage is a no-op; touch it so rank 0 stays "known scalar".
    tt.shape.SetInParent()
    for d in shape:
        dim = tt.shape.dim.add()
        if d is not None:
            dim.dim_value = int(d)


def make_value_info(name: str, elem_type: int, shape: Optional[Sequence[Optional[int]]]) -> onnx.ValueInfoProto:
    return helper.make_tensor_value_info(name, int(elem_type), None if shape is None else list(shape))


# ---------------------------- Graph utilities ----------------------------

def build_producers_consumers(nodes: Sequence[onnx.NodeProto]):
    producer_of: Dict[str, int] = {}
    consumers_of: Dict[str, List[int]] = defaultdict(list)

    for idx, node in enumerate(nodes):
        for out in node.output:
            if out:
                producer_of[out] = idx

    for idx, node in enumerate(nodes):
        for inp in node.input:
            if inp:
                consumers_of[inp].append(idx)

    return producer_of, consumers_of


def topo_sort(
    nodes: Sequence[onnx.NodeProto],
    producer_of: Dict[str, int],
    inputs_of: Optional[Callable[[onnx.NodeProto], Iterable[str]]] = None,
) -> List[int]:
    """Kahn topological sort over ONNX node indices (stable w.r.t. the input order).

    `inputs_of` lets callers account for implicit inputs (tensors captured by
    If/Loop bodies); it defaults to `node.input`.
    """
    preds: List[set] = [set() for _ in nodes]
    succs: List[set] = [set() for _ in nodes]

    for j, node in enumerate(nodes):
        for inp in (inputs_of(node) if inputs_of is not None else node.input):
            if inp in producer_of:
                p = producer_of[inp]
                if p == j:
                    continue
                preds[j].add(p)
                succs[p].add(j)

    indeg = [len(p) for p in preds]
    q = deque([i for i, d in enumerate(indeg) if d == 0])
    order: List[int] = []

    while q:
        u = q.popleft()
        order.append(u)
        for v in sorted(succs[u]):
            indeg[v] -= 1
            if indeg[v] == 0:
                q.append(v)

    # If graph has cycles, append remaining nodes in their original order
    if len(order) != len(nodes):
        seen = set(order)
        order.extend(i for i in range(len(nodes)) if i not in seen)

    return order


def get_attr(node: onnx.NodeProto, name: str, default=None):
    for a in node.attribute:
        if a.name != name:
            continue
        if a.type == onnx.AttributeProto.INTS:
            return list(a.ints)
        if a.type == onnx.AttributeProto.INT:
            return int(a.i)
        if a.type == onnx.AttributeProto.FLOAT:
            return float(a.f)
        if a.type == onnx.AttributeProto.FLOATS:
            return list(a.floats)
        if a.type == onnx.AttributeProto.STRING:
            try:
                return a.s.decode("utf-8")
            except UnicodeDecodeError:
                return str(a.s)
        if a.type == onnx.AttributeProto.TENSOR:
            return a.t
    return default


# ---------------------------- Layer naming ----------------------------

# Exporters encode the decoder layer in node/tensor names, e.g. "/model/layers.20/...",
# "past_key_values.3.key" or "layers_7".
_LAYER_PATTERNS = (
    re.compile(r"layers\.(\d+)", re.IGNORECASE),
    re.compile(r"/layers/(\d+)", re.IGNORECASE),
    re.compile(r"layers_(\d+)", re.IGNORECASE),
    re.compile(r"past_key_values\.(\d+)", re.IGNORECASE),
    re.compile(r"present\.(\d+)", re.IGNORECASE),
)


def extract_layer_id(*names: str) -> Optional[int]:
    """Return the first layer index found in `names`, or None."""
    for s in names:
        if not s:
            continue
        for pat in _LAYER_PATTERNS:
            m = pat.search(s)
            if m:
                return int(m.group(1))
    return None
