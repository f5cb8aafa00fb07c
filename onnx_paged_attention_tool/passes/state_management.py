"""Replace stateful SDPA layers with paged attention.

Each attention layer of a stateful decoder looks like::

    past_k = ReadValue(variable_id="...key")        # or a past_key_values Parameter
    k_all  = Concat(Gather(past_k, beam_idx), k, axis=2)
    Assign(k_all, variable_id="...key")              # or a present.* Result
    (same for V)
    out    = ScaledDotProductAttention(q, k_all, v_all, mask[, scale])

The pass feeds the current step's K/V straight into a `PagedAttentionExtension`
node reading a block-addressed `key_cache.<i>`/`value_cache.<i>` pair, and
records everything the old cache plumbing owned (past Parameters, present Results,
Assign sinks) for removal by the finalizer.
"""

from __future__ import annotations

import logging
from typing import Iterable, List

import numpy as np
import onnx
from onnx import TensorProto

from ..errors import PatternMismatch
from ..graph_model import Graph
from ..onnx_utils import extract_layer_id, make_value_info
from ..opset import is_assign, is_sdpa, make_paged_attention, variable_id
from ..params import KEY_CACHE_PREFIX, VALUE_CACHE_PREFIX
from .base import PassContext, PatternPass
from .patterns import CachedKv, match_cached_kv

LOGGER = logging.getLogger("onnx_paged_attention_tool.passes.state_management")

# [num_blocks, num_kv_heads, block_size, head_size]
KV_CACHE_RANK = 4


class StateManagementPass(PatternPass):
    name = "StateManagement"

    def __init__(self, ctx: PassContext):
        self.ctx = ctx

    def candidates(self, graph: Graph) -> Iterable[onnx.NodeProto]:
        return [n for n in graph.nodes_topological() if is_sdpa(n)]

    def run(self, graph: Graph) -> int:
        n = super().run(graph)
        self._check_layer_order()
        return n

    def rewrite(self, graph: Graph, sdpa: onnx.NodeProto) -> None:
        if len(sdpa.input) < 3 or not sdpa.output:
            raise PatternMismatch("SDPA needs query, key and value inputs")
        query = sdpa.input[0]
        key = match_cached_kv(graph, sdpa.input[1])
        value = match_cached_kv(graph, sdpa.input[2])

        ctx = self.ctx
        inputs = ctx.inputs
        layer = ctx.next_layer(extract_layer_id(key.past.variable, value.past.variable, sdpa.name))

        key_cache = make_value_info(
            f"{KEY_CACHE_PREFIX}.{layer}", self._cache_type(graph, key, query), [None] * KV_CACHE_RANK
        )
        value_cache = make_value_info(
            f"{VALUE_CACHE_PREFIX}.{layer}", self._cache_type(graph, value, query), [None] * KV_CACHE_RANK
        )
        ctx.kv_parameters.extend([key_cache, value_cache])

        prefix = f"paged_attention.{layer}"
        if len(sdpa.input) > 4 and sdpa.input[4]:
            scale = sdpa.input[4]
        else:
            scale = self._default_scale(graph, query, prefix)
        alibi_slopes = graph.add_constant(np.zeros((0,), dtype=np.float32), f"{prefix}/alibi_slopes")

        pa_inputs = [
            self._flatten_heads(graph, query, f"{prefix}/query"),
            self._flatten_heads(graph, key.current, f"{prefix}/key"),
            self._flatten_heads(graph, value.current, f"{prefix}/value"),
            key_cache.name,
            value_cache.name,
            inputs.context_lens,
            inputs.subsequence_begins,
            inputs.block_indices,
            inputs.block_indices_begins,
            scale,
            inputs.sliding_window,
            alibi_slopes,
            inputs.max_context_len,
        ]
        pa = graph.add_node(make_paged_attention(pa_inputs, graph.unique_name(f"{prefix}_output_0"), name=prefix))
        out = self._restore_heads(graph, pa.output[0], value.current, prefix)
        graph.replace_all_uses(sdpa.output[0], out)

        for kv in (key, value):
            self._mark_obsolete(graph, kv)
        LOGGER.debug("Layer %d: %s -> %s", layer, sdpa.name, pa.name)

    # ---------------------------- helpers ----------------------------

    @staticmethod
    def _cache_type(graph: Graph, kv: CachedKv, query: str) -> int:
        for name in (kv.past.tensor, kv.current, query):
            et = graph.elem_type(name)
            if et is not None:
                return et
        return TensorProto.FLOAT

    @staticmethod
    def _flatten_heads(graph: Graph, x: str, hint: str) -> str:
        # [batch, heads, seq, head] -> [batch, seq, heads * head]
        t = graph.make_node("Transpose", [x], name_hint=f"{hint}/transpose", perm=[0, 2, 1, 3])
        shape = graph.add_constant(np.array([0, 0, -1], dtype=np.int64), f"{hint}/shape")
        r = graph.make_node("Reshape", [t.output[0], shape], name_hint=f"{hint}/reshape")
        return r.output[0]

    @staticmethod
    def _restore_heads(graph: Graph, x: str, value: str, hint: str) -> str:
        # [batch, seq, heads * head_v] -> [batch, heads, seq, head_v]
        head_v = _dim_slice(graph, value, 3, f"{hint}/head_size_v")
        lead = graph.add_constant(np.array([0, 0, -1], dtype=np.int64), f"{hint}/output_shape_lead")
        shape = graph.make_node("Concat", [lead, head_v], name_hint=f"{hint}/output_shape", axis=0)
        r = graph.make_node("Reshape", [x, shape.output[0]], name_hint=f"{hint}/output_reshape")
        t = graph.make_node("Transpose", [r.output[0]], name_hint=f"{hint}/output_transpose", perm=[0, 2, 1, 3])
        return t.output[0]

    @staticmethod
    def _default_scale(graph: Graph, query: str, hint: str) -> str:
        # 1 / sqrt(head_size) as a float scalar
        head = _dim_slice(graph, query, 3, f"{hint}/head_size")
        f = graph.make_node("Cast", [head], name_hint=f"{hint}/head_size_float", to=TensorProto.FLOAT)
        s = graph.make_node("Sqrt", [f.output[0]], name_hint=f"{hint}/head_size_sqrt")
        r = graph.make_node("Reciprocal", [s.output[0]], name_hint=f"{hint}/scale_1d")
        scalar = graph.add_constant(np.zeros((0,), dtype=np.int64), f"{hint}/scalar_shape")
        out = graph.make_node("Reshape", [r.output[0], scalar], name_hint=f"{hint}/scale")
        return out.output[0]

    def _mark_obsolete(self, graph: Graph, kv: CachedKv) -> None:
        ctx = self.ctx
        if kv.past.is_state:
            for sink in graph.sinks():
                if is_assign(sink) and variable_id(sink) == kv.past.variable:
                    ctx.mark_sink(sink.name)
        else:
            ctx.mark_parameter(kv.past.variable)
        present = kv.concat.output[0]
        if present in graph.result_names():
            ctx.mark_result(present)

    def _check_layer_order(self) -> None:
        declared: List[int] = [d for d in self.ctx.declared_layers if d is not None]
        if declared != sorted(declared):
            LOGGER.warning(
                "KV cache inputs follow graph order, which differs from the layer ids in the "
                "source names: %s",
                declared,
            )


def _dim_slice(graph: Graph, x: str, axis: int, hint: str) -> str:
    """1-D [1] int64 tensor holding `x.shape[axis]`."""
    shape = graph.make_node("Shape", [x], name_hint=f"{hint}/shape")
    starts = graph.add_constant(np.array([axis], dtype=np.int64), f"{hint}/start")
    ends = graph.add_constant(np.array([axis + 1], dtype=np.int64), f"{hint}/end")
    sl = graph.make_node("Slice", [shape.output[0], starts, ends], name_hint=hint)
    return sl.output[0]
