"""Redirect independently computed position indices to the canonical position ids.

Rotary embeddings gather rows of a constant cos/sin table. Exports that do not
take `position_ids` as an input rebuild the indices in-graph (``Range`` over the
past length, or ``CumSum`` over the attention mask). In a flattened multi-sequence
batch those computations are wrong, so the table lookups are pointed at the
position ids supplied by the serving engine instead.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Set

import onnx

from ..errors import PatternMismatch
from ..graph_model import Graph
from .base import PatternPass

LOGGER = logging.getLogger("onnx_paged_attention_tool.passes.position_ids")

_SOURCE = "source"
_TRANSPARENT = "transparent"

# op_type -> role while walking upstream from the Gather indices.
_OP_ROLES: Dict[str, str] = {
    "Range": _SOURCE,
    "CumSum": _SOURCE,
    "Add": _TRANSPARENT,
    "Sub": _TRANSPARENT,
    "Mul": _TRANSPARENT,
    "Unsqueeze": _TRANSPARENT,
    "Squeeze": _TRANSPARENT,
    "Reshape": _TRANSPARENT,
    "Cast": _TRANSPARENT,
    "Expand": _TRANSPARENT,
    "Slice": _TRANSPARENT,
    "Identity": _TRANSPARENT,
}


class PositionIdsPass(PatternPass):
    name = "PositionIds"

    def __init__(self, position_ids: str, *, max_depth: int = 16):
        self.position_ids = position_ids
        self.max_depth = int(max_depth)

    def candidates(self, graph: Graph) -> Iterable[onnx.NodeProto]:
        out = []
        for n in graph.nodes_topological():
            if n.op_type != "Gather" or (n.domain or "") not in ("", "ai.onnx") or len(n.input) < 2:
                continue
            if n.input[1] == self.position_ids:
                continue
            table = graph.constant_value(n.input[0])
            if table is not None and table.ndim == 2:
                out.append(n)
        return out

    def rewrite(self, graph: Graph, node: onnx.NodeProto) -> None:
        if not self._computes_positions(graph, node.input[1]):
            raise PatternMismatch("indices are not an in-graph position computation")
        LOGGER.debug("Redirecting '%s' indices %s -> %s", node.name, node.input[1], self.position_ids)
        graph.replace_input(node, 1, self.position_ids)

    def _computes_positions(self, graph: Graph, indices: str) -> bool:
        found = False
        seen: Set[str] = set()
        frontier = [(indices, 0)]
        while frontier:
            name, depth = frontier.pop()
            if name in seen or depth > self.max_depth:
                continue
            seen.add(name)
            if name == self.position_ids:
                # Already derived from the canonical tensor.
                return False
            prod = graph.producer(name)
            if prod is None or (prod.domain or "") not in ("", "ai.onnx"):
                continue
            role = _OP_ROLES.get(prod.op_type)
            if role == _SOURCE:
                found = True
            elif role == _TRANSPARENT:
                frontier.extend((i, depth + 1) for i in prod.input if i)
        return found
