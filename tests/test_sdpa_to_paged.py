from __future__ import annotations

import logging

import numpy as np
import pytest

onnx = pytest.importorskip("onnx")
from onnx import TensorProto, numpy_helper

from onnx_paged_attention_tool.api import (
    PagedAttentionParams,
    SDPAToPagedAttention,
    TransformationError,
    check_paged_contract,
    convert_model,
    sdpa_to_paged_attention,
)
from onnx_paged_attention_tool.graph_model import Graph
from onnx_paged_attention_tool.onnx_utils import elemtype_from_vi, shape_from_vi
from onnx_paged_attention_tool.opset import PAGED_ATTENTION, PAGED_DOMAIN, STATE_DOMAIN

EXPECTED_INPUTS_2_LAYERS = [
    "input_ids",
    "position_ids",
    "key_cache.0",
    "value_cache.0",
    "key_cache.1",
    "value_cache.1",
    "context_lens",
    "subsequence_begins",
    "block_indices",
    "block_indices_begins",
    "max_context_len",
]


def _input_names(model):
    inits = {t.name for t in model.graph.initializer}
    return [vi.name for vi in model.graph.input if vi.name not in inits]


def _paged_nodes(model):
    return [n for n in model.graph.node if n.op_type == PAGED_ATTENTION and n.domain == PAGED_DOMAIN]


def _initializer(model, name):
    for t in model.graph.initializer:
        if t.name == name:
            return numpy_helper.to_array(t)
    raise KeyError(name)


def test_stateful_model_converts_to_paged_inputs(make_llm) -> None:
    model = make_llm(2)

    assert sdpa_to_paged_attention(model)

    assert _input_names(model) == EXPECTED_INPUTS_2_LAYERS
    assert not [n for n in model.graph.node if not n.output]
    assert not [n for n in model.graph.node if n.domain == STATE_DOMAIN]
    assert not [n for n in model.graph.node if n.op_type == "ScaledDotProductAttention"]
    assert len(_paged_nodes(model)) == 2
    assert [o.name for o in model.graph.output] == ["logits"]
    assert check_paged_contract(model) == []


def test_paged_attention_node_wiring(make_llm) -> None:
    model = make_llm(2)
    assert sdpa_to_paged_attention(model)

    for layer, node in enumerate(_paged_nodes(model)):
        assert len(node.input) == 13
        assert node.input[3] == f"key_cache.{layer}"
        assert node.input[4] == f"value_cache.{layer}"
        assert list(node.input[5:9]) == [
            "context_lens",
            "subsequence_begins",
            "block_indices",
            "block_indices_begins",
        ]
        assert node.input[12] == "max_context_len"
        assert _initializer(model, node.input[11]).shape == (0,)
        assert int(_initializer(model, node.input[10])) == 0


def test_input_names_are_unique(make_llm) -> None:
    model = make_llm(3)
    assert sdpa_to_paged_attention(model)
    names = _input_names(model)
    assert len(names) == len(set(names))
    assert sum(1 for n in names if n.startswith(("key_cache.", "value_cache."))) == 6


def test_scheduling_input_types(make_llm) -> None:
    model = make_llm(1)
    assert sdpa_to_paged_attention(model)
    graph = Graph(model)

    for name in ("context_lens", "subsequence_begins", "block_indices", "block_indices_begins"):
        vi = graph.get_parameter(name)
        assert elemtype_from_vi(vi) == TensorProto.INT32
        assert shape_from_vi(vi) == [None]
    vi = graph.get_parameter("max_context_len")
    assert elemtype_from_vi(vi) == TensorProto.INT32
    assert shape_from_vi(vi) == []


def test_token_inputs_are_flattened_and_unsqueezed(make_llm) -> None:
    model = make_llm(1)
    assert sdpa_to_paged_attention(model)
    graph = Graph(model)

    for name in ("input_ids", "position_ids"):
        assert shape_from_vi(graph.get_parameter(name)) == [None]
        unsqueeze = [n for n in graph.consumers(name) if n.op_type == "Unsqueeze"]
        assert len(unsqueeze) == 1
        # Every other reader goes through the unsqueezed tensor.
        assert graph.consumers(name) == unsqueeze
        vi = graph.value_info(unsqueeze[0].output[0])
        assert vi is not None
        assert shape_from_vi(vi) == [None, 1]
        assert elemtype_from_vi(vi) == TensorProto.INT64


def test_position_ids_added_when_missing(make_llm) -> None:
    model = make_llm(1)
    assert "position_ids" not in _input_names(model)
    assert sdpa_to_paged_attention(model)
    assert elemtype_from_vi(Graph(model).get_parameter("position_ids")) == TensorProto.INT64


def test_existing_position_ids_are_relaxed(make_llm) -> None:
    model = make_llm(2, with_position_ids=True)
    assert sdpa_to_paged_attention(model)
    assert _input_names(model) == EXPECTED_INPUTS_2_LAYERS
    graph = Graph(model)
    assert shape_from_vi(graph.get_parameter("position_ids")) == [None]


def test_rope_lookup_reads_position_ids(make_llm) -> None:
    model = make_llm(2)
    assert sdpa_to_paged_attention(model)
    graph = Graph(model)

    rope = [n for n in graph.nodes() if n.op_type == "Gather" and n.input[0] == "rope_cos"]
    assert len(rope) == 1
    prod = graph.producer(rope[0].input[1])
    assert prod.op_type == "Unsqueeze" and prod.input[0] == "position_ids"
    assert not [n for n in graph.nodes() if n.op_type == "Range"]


def test_parameter_kv_model_drops_past_inputs_and_present_outputs(make_llm) -> None:
    model = make_llm(2, kv_mode="parameter")
    assert sdpa_to_paged_attention(model)

    assert _input_names(model) == EXPECTED_INPUTS_2_LAYERS
    assert [o.name for o in model.graph.output] == ["logits"]
    assert check_paged_contract(model) == []


@pytest.mark.parametrize("kv_mode", ["state", "parameter"])
def test_image_input_shape_reads_are_kept(make_llm, kv_mode) -> None:
    from onnx import helper

    model = make_llm(1, kv_mode=kv_mode)
    g = model.graph
    g.input.append(helper.make_tensor_value_info("pixel_values", TensorProto.FLOAT, ["b", 3, "h", "w"]))
    g.initializer.append(numpy_helper.from_array(np.array(2, dtype=np.int64), "img_axis"))
    g.node.extend(
        [
            helper.make_node("Shape", ["pixel_values"], ["img_shape"], name="img_shape"),
            helper.make_node("Gather", ["img_shape", "img_axis"], ["img_h"], name="img_h", axis=0),
        ]
    )
    g.output.append(helper.make_tensor_value_info("img_h", TensorProto.INT64, []))

    transform = SDPAToPagedAttention()
    assert transform.run_on_model(Graph(model))
    assert transform.pass_counts["PrevSequenceLength"] == 1

    prod = Graph(model).producer("img_h")
    assert prod.op_type == "Gather"
    assert list(prod.input) == ["img_shape", "img_axis"]


def test_kv_cache_dtype_follows_past_kv(make_llm) -> None:
    model = make_llm(1, kv_mode="parameter", kv_dtype=TensorProto.FLOAT16)
    assert sdpa_to_paged_attention(model)
    graph = Graph(model)
    assert elemtype_from_vi(graph.get_parameter("key_cache.0")) == TensorProto.FLOAT16
    assert shape_from_vi(graph.get_parameter("key_cache.0")) == [None, None, None, None]


def test_sliding_window_and_explicit_scale(make_llm) -> None:
    model = make_llm(1, with_scale=True)
    assert sdpa_to_paged_attention(model, PagedAttentionParams(sliding_window=8))

    (node,) = _paged_nodes(model)
    assert int(_initializer(model, node.input[10])) == 8
    assert node.input[9] == "/model/layers.0/attn_scale"


def test_default_scale_is_computed_from_head_size(make_llm) -> None:
    model = make_llm(1)
    assert sdpa_to_paged_attention(model)
    graph = Graph(model)
    (node,) = _paged_nodes(model)
    scale = graph.producer(node.input[9])
    assert scale.op_type == "Reshape"
    assert graph.producer(scale.input[0]).op_type == "Reciprocal"


def test_grouped_query_attention_layout(make_llm) -> None:
    model = make_llm(2, gqa=True)
    assert sdpa_to_paged_attention(model)
    assert len(_paged_nodes(model)) == 2
    assert check_paged_contract(model) == []


def test_legacy_opset_uses_unsqueeze_attribute(make_llm) -> None:
    model = make_llm(1, opset=11)
    assert sdpa_to_paged_attention(model)
    graph = Graph(model)
    (unsqueeze,) = [n for n in graph.consumers("input_ids") if n.op_type == "Unsqueeze"]
    assert len(unsqueeze.input) == 1
    assert [a.name for a in unsqueeze.attribute] == ["axes"]


def test_model_without_beam_idx(make_llm) -> None:
    model = make_llm(2, with_beam_idx=False)
    assert sdpa_to_paged_attention(model)
    assert _input_names(model) == EXPECTED_INPUTS_2_LAYERS


def test_untracked_sinks_are_removed_with_warning(make_llm, caplog) -> None:
    model = make_llm(1, extra_sink=True)
    with caplog.at_level(logging.WARNING, logger="onnx_paged_attention_tool"):
        assert sdpa_to_paged_attention(model)
    assert not [n for n in model.graph.node if not n.output]
    assert "/model/extra_assign" in caplog.text


def test_layer_order_mismatch_warns(make_llm, caplog) -> None:
    model = make_llm(2, layer_ids=[1, 0])
    with caplog.at_level(logging.WARNING, logger="onnx_paged_attention_tool"):
        assert sdpa_to_paged_attention(model)
    assert _input_names(model) == EXPECTED_INPUTS_2_LAYERS
    assert "differs from the layer ids" in caplog.text


def test_computed_attention_mask_fails(make_llm) -> None:
    model = make_llm(1, mask_from_node=True)
    assert not sdpa_to_paged_attention(model)
    # Nothing was appended after the failure point.
    names = _input_names(model)
    assert "context_lens" not in names
    assert "key_cache.0" not in names


def test_beam_idx_must_be_an_input(make_llm) -> None:
    model = make_llm(1, beam_from_node=True)
    assert not sdpa_to_paged_attention(model)
    assert "max_context_len" not in _input_names(model)


def test_missing_input_ids_fails(make_llm) -> None:
    model = make_llm(1)
    assert not sdpa_to_paged_attention(model, PagedAttentionParams(input_ids_name="tokens"))


def test_existing_scheduling_input_fails(make_llm) -> None:
    model = make_llm(1, extra_params=["context_lens"])
    assert not sdpa_to_paged_attention(model)


def test_custom_input_names(make_llm) -> None:
    model = make_llm(1)
    graph = Graph(model)
    graph.replace_all_uses("attention_mask", "mask")
    graph.get_parameter("attention_mask").name = "mask"

    params = PagedAttentionParams(attention_mask_name="mask")
    assert sdpa_to_paged_attention(model, params)
    assert "mask" not in _input_names(model)
    assert check_paged_contract(model, params) == []


def test_convert_model_copies_and_raises(make_llm) -> None:
    model = make_llm(1)
    before = model.SerializeToString()

    out = convert_model(model)
    assert model.SerializeToString() == before
    assert "key_cache.0" in _input_names(out)

    with pytest.raises(TransformationError):
        convert_model(make_llm(1, mask_from_node=True))


def test_pass_object_records_rewrite_counts(make_llm) -> None:
    model = make_llm(2)
    transform = SDPAToPagedAttention(PagedAttentionParams(per_pass_validation=True))
    assert transform.run_on_model(Graph(model))

    counts = transform.pass_counts
    assert counts["StateManagement"] == 2
    assert counts["PrevSequenceLength"] == 1
    assert counts["TotalSequenceLength"] == 1
    assert counts["PositionIds"] == 1


def test_no_attention_layers_still_finalizes(caplog) -> None:
    from onnx import helper

    ids = helper.make_tensor_value_info("input_ids", TensorProto.INT64, ["b", "s"])
    mask = helper.make_tensor_value_info("attention_mask", TensorProto.INT64, ["b", "t"])
    out = helper.make_tensor_value_info("y", TensorProto.INT64, None)
    node = helper.make_node("Identity", ["input_ids"], ["y"], name="id")
    model = helper.make_model(helper.make_graph([node], "g", [ids, mask], [out]))

    with caplog.at_level(logging.WARNING, logger="onnx_paged_attention_tool"):
        assert sdpa_to_paged_attention(model)
    assert "No attention layer matched" in caplog.text
    assert _input_names(model) == [
        "input_ids",
        "position_ids",
        "context_lens",
        "subsequence_begins",
        "block_indices",
        "block_indices_begins",
        "max_context_len",
    ]
