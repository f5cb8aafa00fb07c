"""Replace sequence-length computations derived from the KV cache.

Decoder exports compute "tokens already cached" and "tokens in total" by reading
the sequence axis of the past/present KV tensors (or the attention mask). After
the paged rewrite those tensors no longer carry meaningful shapes, so the reads
are replaced by expressions over the scheduling inputs.
"""

from __future__ import annotations

import logging
from typing import Collection, Dict, Iterable

import numpy as np
import onnx
from onnx import TensorProto

from ..errors import PatternMismatch
from ..graph_model import Graph
from .base import PatternPass
from .patterns import KV_SEQ_AXES, ShapeRead, match_shape_read, past_kv_source, present_concat

LOGGER = logging.getLogger("onnx_paged_attention_tool.passes.sequence_length")


class _ShapeReadPass(PatternPass):
    """Replace matching single-dimension shape reads with an int64 `value`."""

    def __init__(self, value: str):
        self.value = value
        self._replacements: Dict[bool, str] = {}

    def candidates(self, graph: Graph) -> Iterable[onnx.NodeProto]:
        return [n for n in graph.nodes_topological() if match_shape_read(graph, n) is not None]

    def check_source(self, graph: Graph, read: ShapeRead) -> None:
        raise NotImplementedError

    def rewrite(self, graph: Graph, node: onnx.NodeProto) -> None:
        read = match_shape_read(graph, node)
        if read is None:
            raise PatternMismatch("not a shape read")
        self.check_source(graph, read)
        graph.replace_all_uses(node.output[0], self._replacement(graph, read.keep_dims))

    def _replacement(self, graph: Graph, keep_dims: bool) -> str:
        # Shape reads are int64; build each form once per pass.
        if keep_dims not in self._replacements:
            hint = f"{self.value}/{self.name}"
            cast = graph.make_node("Cast", [self.value], name_hint=f"{hint}/cast", to=TensorProto.INT64)
            out = cast.output[0]
            if keep_dims:
                shape = graph.add_constant(np.array([1], dtype=np.int64), f"{hint}/shape")
                out = graph.make_node("Reshape", [out, shape], name_hint=f"{hint}/reshape").output[0]
            self._replacements[keep_dims] = out
        return self._replacements[keep_dims]


class PrevSequenceLengthPass(_ShapeReadPass):
    """`past_kv.shape[2]` -> ``prev_max_seq_len``.

    State reads always qualify. A graph Parameter qualifies only when it is in
    `past_parameters`, the past-KV inputs the state-management pass matched;
    other rank-4 inputs (image tensors, for instance) are left alone.
    """

    name = "PrevSequenceLength"

    def __init__(self, value: str, past_parameters: Collection[str] = ()):
        super().__init__(value)
        # Read at run time: the state-management pass fills the list first.
        self.past_parameters = past_parameters

    def check_source(self, graph: Graph, read: ShapeRead) -> None:
        if read.axis not in KV_SEQ_AXES:
            raise PatternMismatch(f"axis {read.axis} is not the KV sequence axis")
        src = past_kv_source(graph, read.source)
        if not src.is_state and src.tensor not in self.past_parameters:
            raise PatternMismatch(f"Parameter '{src.tensor}' was not matched as a past KV input")


class TotalSequenceLengthPass(_ShapeReadPass):
    """`present_kv.shape[2]` or `attention_mask.shape[-1]` -> ``max_context_len``."""

    name = "TotalSequenceLength"

    def __init__(self, max_context_len: str, *, attention_mask: str = "attention_mask"):
        super().__init__(max_context_len)
        self.attention_mask = attention_mask

    def check_source(self, graph: Graph, read: ShapeRead) -> None:
        if read.source == self.attention_mask and graph.resolve(read.source).is_parameter:
            if read.axis not in (1, -1):
                raise PatternMismatch(f"attention mask axis {read.axis} is not the total length")
            return
        if read.axis not in KV_SEQ_AXES:
            raise PatternMismatch(f"axis {read.axis} is not the KV sequence axis")
        concat = present_concat(graph, read.source)
        past_kv_source(graph, concat.input[0])
