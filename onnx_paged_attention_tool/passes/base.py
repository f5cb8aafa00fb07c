"""Rewrite-pass plumbing: shared context, pass base classes and the pass manager."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import ClassVar, Dict, Iterable, List, Optional, Set

import onnx

from ..errors import PatternMismatch
from ..graph_model import Graph

LOGGER = logging.getLogger("onnx_paged_attention_tool.passes")


@dataclass(frozen=True)
class SchedulingInputs:
    """Tensor names of the scheduling metadata, shared read-only by all passes."""

    max_context_len: str
    context_lens: str
    subsequence_begins: str
    block_indices: str
    block_indices_begins: str
    sliding_window: str


@dataclass
class PassContext:
    """Bookkeeping threaded through the rewrite passes.

    Field ownership:

    - ``kv_parameters``, ``layer_index`` and ``declared_layers`` are written only by
      the state-management pass; the finalizer reads ``kv_parameters``.
    - ``parameters_to_remove``, ``results_to_remove`` and ``sinks_to_remove`` are
      appended by the state-management pass and consumed by the finalizer. The
      previous-sequence-length pass reads ``parameters_to_remove``.
    - ``inputs`` is read-only.
    """

    inputs: SchedulingInputs
    kv_parameters: List[onnx.ValueInfoProto] = field(default_factory=list)
    parameters_to_remove: List[str] = field(default_factory=list)
    results_to_remove: List[str] = field(default_factory=list)
    sinks_to_remove: List[str] = field(default_factory=list)
    layer_index: int = 0
    # Layer id parsed from the source names of each processed layer (None if absent).
    declared_layers: List[Optional[int]] = field(default_factory=list)

    def next_layer(self, declared: Optional[int] = None) -> int:
        idx = self.layer_index
        self.layer_index += 1
        self.declared_layers.append(declared)
        return idx

    def mark_parameter(self, name: str) -> None:
        if name not in self.parameters_to_remove:
            self.parameters_to_remove.append(name)

    def mark_result(self, name: str) -> None:
        if name not in self.results_to_remove:
            self.results_to_remove.append(name)

    def mark_sink(self, node_name: str) -> None:
        if node_name not in self.sinks_to_remove:
            self.sinks_to_remove.append(node_name)


class GraphPass:
    """Base class for a rewrite pass. `run` returns the number of rewrites."""

    name: ClassVar[str] = ""

    def run(self, graph: Graph) -> int:
        raise NotImplementedError


class PatternPass(GraphPass):
    """Match-then-replace over candidate nodes in topological order.

    `rewrite` raises `PatternMismatch` for candidates that do not fit; those are
    skipped so one malformed layer does not block the others.
    """

    def candidates(self, graph: Graph) -> Iterable[onnx.NodeProto]:
        raise NotImplementedError

    def rewrite(self, graph: Graph, node: onnx.NodeProto) -> None:
        raise NotImplementedError

    def run(self, graph: Graph) -> int:
        n_rewritten = 0
        for node in list(self.candidates(graph)):
            try:
                self.rewrite(graph, node)
            except PatternMismatch as e:
                LOGGER.debug("%s: skipping %s '%s': %s", self.name, node.op_type, node.name, e)
                continue
            n_rewritten += 1
        return n_rewritten


class PassManager:
    """Run registered passes once, in registration order."""

    def __init__(self, *, per_pass_validation: bool = False, context: Optional[PassContext] = None):
        self.per_pass_validation = bool(per_pass_validation)
        # Inputs referenced by rewritten nodes before the finalizer adds them.
        self.context = context
        self._passes: List[GraphPass] = []

    def register_pass(self, p: GraphPass) -> GraphPass:
        self._passes.append(p)
        return p

    @property
    def passes(self) -> List[GraphPass]:
        return list(self._passes)

    def _pending_inputs(self) -> Set[str]:
        if self.context is None:
            return set()
        ctx = self.context
        names = set(dataclasses.astuple(ctx.inputs))
        names.update(vi.name for vi in ctx.kv_parameters)
        return names

    def run_passes(self, graph: Graph) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for p in self._passes:
            label = p.name or type(p).__name__
            n = p.run(graph)
            counts[label] = n
            LOGGER.info("%s: %d rewrite(s)", label, n)
            if self.per_pass_validation:
                pending = self._pending_inputs()
                dangling = [(c, t) for c, t in graph.dangling_references() if t not in pending]
                if dangling:
                    LOGGER.warning(
                        "%s left %d dangling reference(s), e.g. %s",
                        label,
                        len(dangling),
                        ", ".join(f"{c}<-{t}" for c, t in dangling[:5]),
                    )
        return counts
