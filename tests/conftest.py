"""Tiny stateful decoder models built in memory with onnx.helper.

Each layer follows the exporter layout the converter targets::

    past = ReadValue(variable_id="past_key_values.<i>.key")   (or a Parameter)
    k_all = Concat(Gather(past, beam_idx), k, axis=2) -> Assign / present Result
    out = ScaledDotProductAttention(q * rope, k_all, v_all, Cast(attention_mask))

Rotary positions are computed in-graph as ``Range(past_len, total_len)`` unless the
model takes `position_ids` as an input.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import pytest

onnx = pytest.importorskip("onnx")
from onnx import TensorProto, helper, numpy_helper

from onnx_paged_attention_tool.opset import (
    PAGED_DOMAIN,
    STATE_DOMAIN,
    make_assign,
    make_read_value,
    make_sdpa,
)

HEADS = 2
HEAD_SIZE = 4
HIDDEN = HEADS * HEAD_SIZE
VOCAB = 16
MAX_POSITIONS = 32


class _Builder:
    def __init__(self, opset: int):
        self.opset = opset
        self.nodes: List[onnx.NodeProto] = []
        self.inits: List[onnx.TensorProto] = []
        self.value_info: List[onnx.ValueInfoProto] = []
        self._rng = np.random.default_rng(0)

    def node(self, op: str, inputs: Sequence[str], name: str, *, out: Optional[str] = None, **attrs) -> str:
        out = out or f"{name}_out"
        self.nodes.append(helper.make_node(op, list(inputs), [out], name=name, **attrs))
        return out

    def const(self, name: str, arr) -> str:
        self.inits.append(numpy_helper.from_array(np.asarray(arr), name))
        return name

    def weight(self, name: str, shape, dtype=np.float32) -> str:
        return self.const(name, self._rng.standard_normal(shape).astype(dtype))

    def unsqueeze(self, x: str, axis: int, name: str) -> str:
        if self.opset >= 13:
            axes = self.const(f"{name}/axes", np.array([axis], dtype=np.int64))
            return self.node("Unsqueeze", [x, axes], name)
        return self.node("Unsqueeze", [x], name, axes=[axis])


def build_stateful_llm(
    num_layers: int = 2,
    *,
    kv_mode: str = "state",
    kv_dtype: int = TensorProto.FLOAT,
    with_beam_idx: bool = True,
    beam_from_node: bool = False,
    with_position_ids: bool = False,
    mask_from_node: bool = False,
    with_scale: bool = False,
    gqa: bool = False,
    layer_ids: Optional[Sequence[int]] = None,
    extra_params: Sequence[str] = (),
    extra_sink: bool = False,
    opset: int = 17,
) -> onnx.ModelProto:
    """Return a small stateful decoder with `num_layers` attention layers."""
    b = _Builder(opset)
    layer_ids = list(layer_ids) if layer_ids is not None else list(range(num_layers))

    inputs = [helper.make_tensor_value_info("input_ids", TensorProto.INT64, ["batch", "seq"])]
    outputs: List[onnx.ValueInfoProto] = []

    if mask_from_node:
        ids_shape = b.node("Shape", ["input_ids"], "mask/shape")
        b.node(
            "ConstantOfShape",
            [ids_shape],
            "mask/fill",
            out="attention_mask",
            value=helper.make_tensor("one", TensorProto.INT64, [1], [1]),
        )
    else:
        inputs.append(helper.make_tensor_value_info("attention_mask", TensorProto.INT64, ["batch", "total"]))
    if with_position_ids:
        inputs.append(helper.make_tensor_value_info("position_ids", TensorProto.INT64, ["batch", "seq"]))
    if with_beam_idx:
        if beam_from_node:
            b.nodes.append(
                helper.make_node(
                    "Constant",
                    [],
                    ["beam_idx"],
                    name="beam/const",
                    value=helper.make_tensor("beam", TensorProto.INT32, [1], [0]),
                )
            )
        else:
            inputs.append(helper.make_tensor_value_info("beam_idx", TensorProto.INT32, ["batch"]))

    b.const("idx_1", np.array(1, dtype=np.int64))
    b.const("idx_2", np.array(2, dtype=np.int64))
    b.const("one_i64", np.array(1, dtype=np.int64))
    b.const("split_heads_shape", np.array([0, 0, HEADS, HEAD_SIZE], dtype=np.int64))
    b.const("merge_heads_shape", np.array([0, 0, HIDDEN], dtype=np.int64))
    b.weight("embed_tokens", (VOCAB, HIDDEN))
    b.weight("rope_cos", (MAX_POSITIONS, HEAD_SIZE))

    x = b.node("Gather", ["embed_tokens", "input_ids"], "/model/embed_tokens", axis=0)
    mask = b.node("Cast", ["attention_mask"], "/model/mask_cast", to=TensorProto.FLOAT)

    rope: Optional[str] = None
    for lid in layer_ids:
        prefix = f"/model/layers.{lid}"

        def heads(tag: str) -> str:
            w = b.weight(f"{prefix}/{tag}_proj.weight", (HIDDEN, HIDDEN))
            mm = b.node("MatMul", [x, w], f"{prefix}/{tag}_proj")
            r = b.node("Reshape", [mm, "split_heads_shape"], f"{prefix}/{tag}_split")
            return b.node("Transpose", [r], f"{prefix}/{tag}_heads", perm=[0, 2, 1, 3])

        kv_all = {}
        raw_past = {}
        for tag in ("key", "value"):
            cur = heads(tag)
            var = f"past_key_values.{lid}.{tag}"
            if kv_mode == "state":
                past = f"{var}_state"
                b.nodes.append(make_read_value(past, var, name=f"{prefix}/{tag}_read"))
                b.value_info.append(
                    helper.make_tensor_value_info(past, kv_dtype, ["batch", HEADS, "past", HEAD_SIZE])
                )
            else:
                inputs.append(helper.make_tensor_value_info(var, kv_dtype, ["batch", HEADS, "past", HEAD_SIZE]))
                past = var
            raw_past[tag] = past
            if with_beam_idx:
                past = b.node("Gather", [past, "beam_idx"], f"{prefix}/{tag}_reorder", axis=0)
            present = b.node("Concat", [past, cur], f"{prefix}/{tag}_concat", out=f"present.{lid}.{tag}", axis=2)
            if kv_mode == "state":
                b.nodes.append(make_assign(present, var, name=f"{prefix}/{tag}_assign"))
            else:
                outputs.append(
                    helper.make_tensor_value_info(present, kv_dtype, ["batch", HEADS, "total", HEAD_SIZE])
                )
            if gqa:
                u = b.unsqueeze(present, 2, f"{prefix}/{tag}_gqa_unsqueeze")
                e_shape = b.const(f"{prefix}/{tag}_gqa_expand_shape", np.ones(5, dtype=np.int64))
                e = b.node("Expand", [u, e_shape], f"{prefix}/{tag}_gqa_expand")
                r_shape = b.const(f"{prefix}/{tag}_gqa_shape", np.array([0, HEADS, -1, HEAD_SIZE], dtype=np.int64))
                present = b.node("Reshape", [e, r_shape], f"{prefix}/{tag}_gqa_reshape")
            kv_all[tag] = present

        if rope is None:
            if with_position_ids:
                rope = b.node("Gather", ["rope_cos", "position_ids"], "/model/rope/gather", axis=0)
            else:
                past_shape = b.node("Shape", [raw_past["key"]], "/model/past_len/shape")
                past_len = b.node("Gather", [past_shape, "idx_2"], "/model/past_len", axis=0)
                mask_shape = b.node("Shape", ["attention_mask"], "/model/total_len/shape")
                total_len = b.node("Gather", [mask_shape, "idx_1"], "/model/total_len", axis=0)
                positions = b.node("Range", [past_len, total_len, "one_i64"], "/model/positions")
                rope = b.node("Gather", ["rope_cos", positions], "/model/rope/gather", axis=0)

        q = b.node("Mul", [heads("query"), rope], f"{prefix}/query_rope")
        sdpa_in = [q, kv_all["key"], kv_all["value"], mask]
        if with_scale:
            sdpa_in.append(b.const(f"{prefix}/attn_scale", np.array(0.5, dtype=np.float32)))
        attn = f"{prefix}/sdpa_out"
        b.nodes.append(make_sdpa(sdpa_in, attn, name=f"{prefix}/sdpa"))

        t = b.node("Transpose", [attn], f"{prefix}/attn_merge_transpose", perm=[0, 2, 1, 3])
        r = b.node("Reshape", [t, "merge_heads_shape"], f"{prefix}/attn_merge")
        o = b.node("MatMul", [r, b.weight(f"{prefix}/o_proj.weight", (HIDDEN, HIDDEN))], f"{prefix}/o_proj")
        x = b.node("Add", [x, o], f"{prefix}/residual")

    logits = b.node("MatMul", [x, b.weight("lm_head.weight", (HIDDEN, VOCAB))], "/lm_head", out="logits")
    outputs.insert(0, helper.make_tensor_value_info(logits, TensorProto.FLOAT, ["batch", "seq", VOCAB]))

    if extra_sink:
        b.nodes.append(make_assign(logits, "last_logits", name="/model/extra_assign"))
    for name in extra_params:
        inputs.append(helper.make_tensor_value_info(name, TensorProto.INT32, [None]))

    graph = helper.make_graph(b.nodes, "tiny_decoder", inputs, outputs, initializer=b.inits, value_info=b.value_info)
    return helper.make_model(
        graph,
        opset_imports=[
            helper.make_opsetid("", opset),
            helper.make_opsetid(STATE_DOMAIN, 1),
            helper.make_opsetid(PAGED_DOMAIN, 1),
        ],
        producer_name="tests",
    )


@pytest.fixture
def make_llm():
    return build_stateful_llm
