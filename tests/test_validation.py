from __future__ import annotations

import logging
from pathlib import Path

import pytest

onnx = pytest.importorskip("onnx")
from onnx import TensorProto, helper

from onnx_paged_attention_tool.graph_model import Graph
from onnx_paged_attention_tool.log_utils import parse_level, setup_logging
from onnx_paged_attention_tool.model_io import infer_shapes_safe, load_model, save_model
from onnx_paged_attention_tool.sdpa_to_paged import convert_model
from onnx_paged_attention_tool.validation import check_model_safe, check_paged_contract


def test_stateful_model_violates_contract(make_llm) -> None:
    problems = check_paged_contract(make_llm(1))
    text = "\n".join(problems)
    assert "state sink" in text
    assert "'attention_mask' is still present" in text
    assert "trailing inputs" in text


def test_swapped_kv_inputs_are_reported(make_llm) -> None:
    model = convert_model(make_llm(2))
    graph = Graph(model)
    k1 = graph.get_parameter("key_cache.1")
    v0 = graph.get_parameter("value_cache.0")
    k1.name, v0.name = "value_cache.0", "key_cache.1"

    problems = check_paged_contract(model)
    assert any("KV cache inputs" in p for p in problems)


def test_wrong_scheduling_type_is_reported(make_llm) -> None:
    model = convert_model(make_llm(1))
    Graph(model).get_parameter("context_lens").type.tensor_type.elem_type = TensorProto.INT64
    problems = check_paged_contract(model)
    assert problems == [f"input 'context_lens' has element type {TensorProto.INT64}, expected {TensorProto.INT32}"]


def test_dangling_references_are_reported(make_llm) -> None:
    model = convert_model(make_llm(1))
    model.graph.node.add().CopyFrom(helper.make_node("Identity", ["ghost"], ["ghost_out"], name="haunted"))
    problems = check_paged_contract(model)
    assert problems == ["'haunted' reads undefined tensor 'ghost'"]


def test_contract_check_does_not_rename_nodes(make_llm) -> None:
    model = convert_model(make_llm(1))
    model.graph.node.add().CopyFrom(helper.make_node("Identity", ["ghost"], ["ghost_out"]))
    dup = model.graph.node.add()
    dup.CopyFrom(helper.make_node("Identity", ["ghost"], ["ghost_out2"], name=model.graph.node[0].name))
    before = [n.name for n in model.graph.node]

    problems = check_paged_contract(model)

    assert [n.name for n in model.graph.node] == before
    assert "'Identity' reads undefined tensor 'ghost'" in problems


def test_checker_is_best_effort(make_llm) -> None:
    model = convert_model(make_llm(1))
    msg = check_model_safe(model)
    assert msg is None or isinstance(msg, str)


def test_model_io_round_trip(make_llm, tmp_path: Path) -> None:
    model = convert_model(make_llm(1))
    path = tmp_path / "m.onnx"
    save_model(model, path)
    loaded = load_model(path)
    assert [vi.name for vi in loaded.graph.input] == [vi.name for vi in model.graph.input]


def test_infer_shapes_safe_returns_a_model(make_llm) -> None:
    model = convert_model(make_llm(1))
    out = infer_shapes_safe(model)
    assert isinstance(out, onnx.ModelProto)
    assert [vi.name for vi in out.graph.input] == [vi.name for vi in model.graph.input]


def test_parse_level() -> None:
    assert parse_level("debug") == logging.DEBUG
    assert parse_level(None) == logging.INFO
    assert parse_level(logging.WARNING) == logging.WARNING
    with pytest.raises(ValueError):
        parse_level("loud")


def test_setup_logging_keeps_existing_handlers() -> None:
    root = logging.getLogger()
    before = list(root.handlers)
    sentinel = logging.NullHandler()
    root.addHandler(sentinel)
    try:
        setup_logging("WARNING")
        assert root.handlers == before + [sentinel]
        assert logging.getLogger("onnx_paged_attention_tool").level == logging.WARNING
    finally:
        root.removeHandler(sentinel)
        logging.getLogger("onnx_paged_attention_tool").setLevel(logging.NOTSET)
