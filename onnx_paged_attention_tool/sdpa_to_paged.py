"""Convert a stateful SDPA decoder graph into a stateless paged-attention graph.

The rewritten graph takes its KV cache and batch layout as ordinary inputs, in
this order after the (adapted) token and position ids::

    key_cache.0, value_cache.0, ..., key_cache.N, value_cache.N,
    context_lens, subsequence_begins, block_indices, block_indices_begins,
    max_context_len

Sequences of a batch are flattened onto one token axis; `input_ids` and
`position_ids` become ``[tokens]`` inputs followed by a trailing unit axis.

The transformation edits the model in place. It returns False when a required
input does not resolve to a graph input; no edit is rolled back in that case, so
the model must be discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import numpy as np
import onnx
from onnx import TensorProto

from .errors import TransformationError
from .graph_model import BindingKind, Graph
from .model_io import infer_shapes_safe
from .onnx_utils import elemtype_from_vi, make_value_info, set_partial_shape
from .opset import CUSTOM_OPSET_VERSION, PAGED_DOMAIN
from .params import MAX_CONTEXT_LEN, SCHEDULING_INPUTS, SCHEDULING_VECTOR_INPUTS, PagedAttentionParams
from .passes import (
    PassContext,
    PassManager,
    PositionIdsPass,
    PrevSequenceLengthPass,
    SchedulingInputs,
    StateManagementPass,
    TotalSequenceLengthPass,
)

LOGGER = logging.getLogger("onnx_paged_attention_tool.sdpa_to_paged")


@dataclass
class SchedulingParameters:
    """Detached scheduling inputs; appended to the graph by the finalizer."""

    max_context_len: onnx.ValueInfoProto
    vectors: List[onnx.ValueInfoProto]
    sliding_window: str

    def handles(self) -> SchedulingInputs:
        context_lens, subsequence_begins, block_indices, block_indices_begins = (vi.name for vi in self.vectors)
        return SchedulingInputs(
            max_context_len=self.max_context_len.name,
            context_lens=context_lens,
            subsequence_begins=subsequence_begins,
            block_indices=block_indices,
            block_indices_begins=block_indices_begins,
            sliding_window=self.sliding_window,
        )


# ---------------------------- parameter synthesis ----------------------------

def synthesize_scheduling_parameters(graph: Graph, params: PagedAttentionParams) -> SchedulingParameters:
    max_context_len = make_value_info(MAX_CONTEXT_LEN, TensorProto.INT32, [])
    vectors = [make_value_info(name, TensorProto.INT32, [None]) for name in SCHEDULING_VECTOR_INPUTS]
    sliding_window = graph.add_constant(np.array(params.sliding_window, dtype=np.int32), "sliding_window")
    return SchedulingParameters(max_context_len, vectors, sliding_window)


# ---------------------------- input adaptation ----------------------------

def _unsqueeze_last(graph: Graph, name: str, elem_type: Optional[int]) -> str:
    """Append a unit axis to a rank-1 input and move its consumers onto the result."""
    opset = graph.opset_version() or 13
    if opset >= 13:
        axes = graph.add_constant(np.array([1], dtype=np.int64), f"{name}/unsqueeze_axes")
        node = graph.make_node("Unsqueeze", [name, axes], name_hint=f"{name}/unsqueeze")
    else:
        node = graph.make_node("Unsqueeze", [name], name_hint=f"{name}/unsqueeze", axes=[1])
    out = node.output[0]
    graph.replace_all_uses(name, out, exclude=[node.name])
    graph.set_value_info(out, elem_type, [None, 1])
    return out


def adapt_input_ids(graph: Graph, name: str) -> Optional[str]:
    """Flatten the token ids to ``[tokens]``; return the ``[tokens, 1]`` tensor name."""
    binding = graph.resolve(name)
    if not binding.is_parameter:
        LOGGER.error("'%s' must be a graph input, found %s", name, binding.describe())
        return None
    set_partial_shape(binding.value_info, [None])
    return _unsqueeze_last(graph, name, elemtype_from_vi(binding.value_info))


def adapt_position_ids(graph: Graph, name: str) -> Optional[str]:
    """Create or relax the position ids input; return the ``[tokens, 1]`` tensor name."""
    binding = graph.resolve(name)
    if binding.kind is BindingKind.MISSING:
        vi = make_value_info(name, TensorProto.INT64, [None])
        graph.add_parameters([vi])
        elem_type = TensorProto.INT64
        LOGGER.info("Added input '%s'", name)
    elif binding.is_parameter:
        set_partial_shape(binding.value_info, [None])
        elem_type = elemtype_from_vi(binding.value_info)
    else:
        LOGGER.error("'%s' must be a graph input, found %s", name, binding.describe())
        return None
    return _unsqueeze_last(graph, name, elem_type)


def build_prev_max_seq_len(graph: Graph, unsqueezed_input_ids: str, max_context_len: str) -> str:
    """``max_context_len - tokens_in_this_step`` as an int32 scalar."""
    shape = graph.make_node("Shape", [unsqueezed_input_ids], name_hint="cur_seq_len/shape")
    index = graph.add_constant(np.array(1, dtype=np.int64), "cur_seq_len/index")
    cur = graph.make_node("Gather", [shape.output[0], index], name_hint="cur_seq_len", axis=0)
    cur32 = graph.make_node("Cast", [cur.output[0]], name_hint="cur_seq_len/cast", to=TensorProto.INT32)
    prev = graph.make_node("Sub", [max_context_len, cur32.output[0]], name_hint="prev_max_seq_len")
    return prev.output[0]


# ---------------------------- pass sequencing ----------------------------

def run_rewrite_passes(
    graph: Graph,
    ctx: PassContext,
    *,
    prev_max_seq_len: str,
    position_ids: str,
    params: PagedAttentionParams,
) -> Dict[str, int]:
    manager = PassManager(per_pass_validation=params.per_pass_validation, context=ctx)
    manager.register_pass(StateManagementPass(ctx))
    manager.register_pass(PrevSequenceLengthPass(prev_max_seq_len, ctx.parameters_to_remove))
    manager.register_pass(
        TotalSequenceLengthPass(ctx.inputs.max_context_len, attention_mask=params.attention_mask_name)
    )
    manager.register_pass(PositionIdsPass(position_ids))
    return manager.run_passes(graph)


# ---------------------------- finalization ----------------------------

def finalize_graph(
    graph: Graph,
    ctx: PassContext,
    scheduling: SchedulingParameters,
    params: PagedAttentionParams,
) -> bool:
    beam = graph.resolve(params.beam_idx_name)
    if beam.kind is not BindingKind.MISSING:
        if not beam.is_parameter:
            LOGGER.error("'%s' must be a graph input, found %s", beam.name, beam.describe())
            return False
        graph.remove_parameter(beam.name)

    mask = graph.resolve(params.attention_mask_name)
    if not mask.is_parameter:
        LOGGER.error("'%s' must be a graph input, found %s", mask.name, mask.describe())
        return False
    graph.remove_parameter(mask.name)

    for name in ctx.parameters_to_remove:
        if not graph.remove_parameter(name):
            LOGGER.debug("Input '%s' was already removed", name)

    # Every sink goes, matched or not: the path from a KV Concat to its Assign can be
    # arbitrary, and a graph with only some of its state removed is unusable anyway.
    sinks = [s.name for s in graph.sinks()]
    untracked = [s for s in sinks if s not in ctx.sinks_to_remove]
    if untracked:
        LOGGER.warning(
            "Removing %d state sink(s) not matched to an attention layer: %s",
            len(untracked),
            ", ".join(untracked[:8]),
        )
    for name in sinks:
        graph.remove_sink(name)

    for name in ctx.results_to_remove:
        graph.remove_result(name)

    graph.add_parameters(ctx.kv_parameters)
    graph.add_parameters(scheduling.vectors)
    graph.add_parameters([scheduling.max_context_len])
    return True


def restore_structure(graph: Graph, params: PagedAttentionParams) -> None:
    """Re-establish a valid ONNX graph after the passes ran without validation."""
    n_dead = graph.eliminate_dead_nodes()
    n_init = graph.prune_initializers()
    graph.prune_value_info()
    graph.topological_sort()
    graph.ensure_opset(PAGED_DOMAIN, CUSTOM_OPSET_VERSION)
    LOGGER.info("Removed %d dead node(s) and %d unused initializer(s)", n_dead, n_init)

    if params.infer_shapes:
        graph.model.CopyFrom(infer_shapes_safe(graph.model))

    dangling = graph.dangling_references()
    if dangling:
        LOGGER.warning(
            "%d reference(s) to removed tensors remain, e.g. %s",
            len(dangling),
            ", ".join(f"{c}<-{t}" for c, t in dangling[:5]),
        )


# ---------------------------- entry points ----------------------------

class SDPAToPagedAttention:
    """The transformation as a reusable pass object."""

    def __init__(self, params: Optional[PagedAttentionParams] = None):
        self.params = params or PagedAttentionParams()
        self.pass_counts: Dict[str, int] = {}

    def run_on_model(self, model: Union[onnx.ModelProto, Graph]) -> bool:
        graph = model if isinstance(model, Graph) else Graph(model)
        params = self.params

        taken = [n for n in SCHEDULING_INPUTS if graph.resolve(n).kind is not BindingKind.MISSING]
        if taken:
            LOGGER.error("Model already defines paged-attention input(s): %s", ", ".join(taken))
            return False

        scheduling = synthesize_scheduling_parameters(graph, params)

        input_ids = adapt_input_ids(graph, params.input_ids_name)
        if input_ids is None:
            return False
        prev_max_seq_len = build_prev_max_seq_len(graph, input_ids, scheduling.max_context_len.name)

        position_ids = adapt_position_ids(graph, params.position_ids_name)
        if position_ids is None:
            return False

        ctx = PassContext(inputs=scheduling.handles())
        self.pass_counts = run_rewrite_passes(
            graph,
            ctx,
            prev_max_seq_len=prev_max_seq_len,
            position_ids=position_ids,
            params=params,
        )
        if ctx.layer_index == 0:
            LOGGER.warning("No attention layer matched the stateful SDPA pattern")

        if not finalize_graph(graph, ctx, scheduling, params):
            return False
        restore_structure(graph, params)
        LOGGER.info(
            "Converted %d attention layer(s); %d graph input(s)",
            ctx.layer_index,
            len(graph.parameters()),
        )
        return True


def sdpa_to_paged_attention(model: onnx.ModelProto, params: Optional[PagedAttentionParams] = None) -> bool:
    """Transform `model` in place. See module docstring."""
    return SDPAToPagedAttention(params).run_on_model(model)


def convert_model(model: onnx.ModelProto, params: Optional[PagedAttentionParams] = None) -> onnx.ModelProto:
    """Return a transformed copy of `model`; raise `TransformationError` on failure."""
    out = onnx.ModelProto()
    out.CopyFrom(model)
    if not sdpa_to_paged_attention(out, params):
        raise TransformationError("SDPA -> paged attention conversion failed; see log for details")
    return out
