"""Mutable graph model over `onnx.ModelProto`.

`Graph` gives ONNX protos the vocabulary the rewrite passes work in:

- *Parameters*: graph inputs that are not initializers.
- *Results*: graph outputs.
- *Sinks*: nodes without outputs (``ai.stateful::Assign``).

All edits go through `Graph` so the producer/consumer index stays coherent.
The node list is allowed to be temporarily out of topological order while passes
run; `topological_sort()` restores it during finalization.
"""

from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np
import onnx
from onnx import helper, numpy_helper

from .onnx_utils import (
    build_producers_consumers,
    elemtype_from_vi,
    make_value_info,
    set_partial_shape,
    topo_sort,
)

LOGGER = logging.getLogger("onnx_paged_attention_tool.graph_model")


class BindingKind(enum.Enum):
    PARAMETER = "parameter"
    INITIALIZER = "initializer"
    NODE_OUTPUT = "node_output"
    MISSING = "missing"


@dataclass(frozen=True, eq=False)
class Binding:
    """What a tensor name resolves to inside a graph."""

    name: str
    kind: BindingKind
    value_info: Optional[onnx.ValueInfoProto] = None
    producer: Optional[onnx.NodeProto] = None

    @property
    def is_parameter(self) -> bool:
        return self.kind is BindingKind.PARAMETER

    def describe(self) -> str:
        if self.kind is BindingKind.NODE_OUTPUT and self.producer is not None:
            return f"output of {self.producer.op_type} node '{self.producer.name}'"
        return self.kind.value


def _subgraph_inputs(g: onnx.GraphProto) -> Set[str]:
    """Outer-scope names referenced by a subgraph (If/Loop/Scan bodies)."""
    local: Set[str] = {vi.name for vi in g.input} | {t.name for t in g.initializer}
    for n in g.node:
        local.update(o for o in n.output if o)
    used: Set[str] = set()
    for n in g.node:
        used.update(i for i in node_inputs(n) if i)
    used.update(vi.name for vi in g.output)
    return used - local


def _rename_in_subgraphs(node: onnx.NodeProto, old: str, new: str) -> int:
    """Rename outer-scope captures of `old` inside `node`'s subgraph attributes."""
    n_rewired = 0
    for a in node.attribute:
        if a.type == onnx.AttributeProto.GRAPH:
            n_rewired += _rename_captures(a.g, old, new)
        elif a.type == onnx.AttributeProto.GRAPHS:
            for g in a.graphs:
                n_rewired += _rename_captures(g, old, new)
    return n_rewired


def _rename_captures(g: onnx.GraphProto, old: str, new: str) -> int:
    local: Set[str] = {vi.name for vi in g.input} | {t.name for t in g.initializer}
    for n in g.node:
        local.update(o for o in n.output if o)
    if old in local:
        # Shadowed by a subgraph-local name.
        return 0
    n_rewired = 0
    for n in g.node:
        for i, inp in enumerate(n.input):
            if inp == old:
                n.input[i] = new
                n_rewired += 1
        n_rewired += _rename_in_subgraphs(n, old, new)
    return n_rewired


def node_inputs(node: onnx.NodeProto) -> List[str]:
    """Explicit inputs plus tensors captured implicitly by subgraph attributes."""
    names = [i for i in node.input if i]
    for a in node.attribute:
        if a.type == onnx.AttributeProto.GRAPH:
            names.extend(sorted(_subgraph_inputs(a.g)))
        elif a.type == onnx.AttributeProto.GRAPHS:
            for g in a.graphs:
                names.extend(sorted(_subgraph_inputs(g)))
    return names


class Graph:
    """In-place editor for an ONNX model."""

    def __init__(self, model: onnx.ModelProto, *, name_nodes: bool = True):
        """Wrap `model`. With `name_nodes=False` the model is left untouched,
        for read-only inspection; node identities are then not guaranteed.
        """
        self.model = model
        self._index: Optional[Tuple[Dict[str, onnx.NodeProto], Dict[str, List[onnx.NodeProto]]]] = None
        self._taken: Set[str] = set()
        self._collect_names()
        if name_nodes:
            self._name_nodes()

    @property
    def graph(self) -> onnx.GraphProto:
        return self.model.graph

    # ---------------------------- names ----------------------------

    def _collect_names(self) -> None:
        g = self.graph
        self._taken.update(vi.name for vi in g.input)
        self._taken.update(vi.name for vi in g.output)
        self._taken.update(vi.name for vi in g.value_info)
        self._taken.update(t.name for t in g.initializer)
        for n in g.node:
            if n.name:
                self._taken.add(n.name)
            self._taken.update(o for o in n.output if o)
            self._taken.update(i for i in n.input if i)

    def _name_nodes(self) -> None:
        # Node names are used as identities; make them present and unique.
        seen: Set[str] = set()
        for n in self.graph.node:
            if not n.name or n.name in seen:
                n.name = self.unique_name(n.name or n.op_type)
            seen.add(n.name)

    def unique_name(self, hint: str) -> str:
        base = hint or "node"
        if base not in self._taken:
            self._taken.add(base)
            return base
        i = 1
        while f"{base}_{i}" in self._taken:
            i += 1
        name = f"{base}_{i}"
        self._taken.add(name)
        return name

    # ---------------------------- index ----------------------------

    def _invalidate(self) -> None:
        self._index = None

    def _get_index(self):
        if self._index is None:
            nodes = list(self.graph.node)
            producer_of, consumers_of = build_producers_consumers(nodes)
            producers = {t: nodes[i] for t, i in producer_of.items()}
            consumers = {t: [nodes[i] for i in idxs] for t, idxs in consumers_of.items()}
            self._index = (producers, consumers)
        return self._index

    def producer(self, tensor: str) -> Optional[onnx.NodeProto]:
        return self._get_index()[0].get(tensor)

    def consumers(self, tensor: str) -> List[onnx.NodeProto]:
        return list(self._get_index()[1].get(tensor, []))

    def nodes(self) -> List[onnx.NodeProto]:
        return list(self.graph.node)

    def nodes_topological(self) -> List[onnx.NodeProto]:
        nodes = list(self.graph.node)
        producer_of, _ = build_producers_consumers(nodes)
        return [nodes[i] for i in topo_sort(nodes, producer_of, inputs_of=node_inputs)]

    # ---------------------------- parameters / results / sinks ----------------------------

    def initializer_names(self) -> Set[str]:
        return {t.name for t in self.graph.initializer}

    def parameters(self) -> List[onnx.ValueInfoProto]:
        inits = self.initializer_names()
        return [vi for vi in self.graph.input if vi.name not in inits]

    def parameter_names(self) -> List[str]:
        return [vi.name for vi in self.parameters()]

    def results(self) -> List[onnx.ValueInfoProto]:
        return list(self.graph.output)

    def result_names(self) -> List[str]:
        return [vi.name for vi in self.graph.output]

    def sinks(self) -> List[onnx.NodeProto]:
        return [n for n in self.graph.node if not any(o for o in n.output)]

    def get_parameter(self, name: str) -> Optional[onnx.ValueInfoProto]:
        for vi in self.parameters():
            if vi.name == name:
                return vi
        return None

    def resolve(self, name: str) -> Binding:
        """Resolve a tensor name to exactly one binding kind."""
        if name in self.initializer_names():
            return Binding(name, BindingKind.INITIALIZER)
        for vi in self.graph.input:
            if vi.name == name:
                return Binding(name, BindingKind.PARAMETER, value_info=vi)
        prod = self.producer(name)
        if prod is not None:
            return Binding(name, BindingKind.NODE_OUTPUT, value_info=self.value_info(name), producer=prod)
        return Binding(name, BindingKind.MISSING)

    def add_parameters(self, params: Iterable[onnx.ValueInfoProto]) -> None:
        for vi in params:
            if any(x.name == vi.name for x in self.graph.input):
                raise ValueError(f"Graph already has an input named '{vi.name}'")
            self.graph.input.add().CopyFrom(vi)
            self._taken.add(vi.name)
        self._invalidate()

    def remove_parameter(self, name: str) -> bool:
        for i, vi in enumerate(self.graph.input):
            if vi.name == name:
                del self.graph.input[i]
                self._invalidate()
                return True
        return False

    def remove_result(self, name: str) -> bool:
        for i, vi in enumerate(self.graph.output):
            if vi.name == name:
                del self.graph.output[i]
                self._invalidate()
                return True
        return False

    def remove_sink(self, node_name: str) -> bool:
        for i, n in enumerate(self.graph.node):
            if n.name == node_name and not any(o for o in n.output):
                del self.graph.node[i]
                self._invalidate()
                return True
        return False

    # ---------------------------- value info ----------------------------

    def value_info(self, name: str) -> Optional[onnx.ValueInfoProto]:
        g = self.graph
        for coll in (g.input, g.value_info, g.output):
            for vi in coll:
                if vi.name == name:
                    return vi
        return None

    def elem_type(self, name: str) -> Optional[int]:
        for t in self.graph.initializer:
            if t.name == name:
                return int(t.data_type)
        return elemtype_from_vi(self.value_info(name))

    def set_value_info(self, name: str, elem_type: Optional[int], shape: Optional[Sequence[Optional[int]]]) -> None:
        for vi in self.graph.value_info:
            if vi.name == name:
                if elem_type is not None:
                    vi.type.tensor_type.elem_type = int(elem_type)
                if shape is not None:
                    set_partial_shape(vi, shape)
                return
        if elem_type is None:
            return
        self.graph.value_info.add().CopyFrom(make_value_info(name, elem_type, shape))

    # ---------------------------- node edits ----------------------------

    def add_node(self, node: onnx.NodeProto) -> onnx.NodeProto:
        """Append a copy of `node` and return the in-graph reference."""
        if not node.name or node.name in self._taken:
            node.name = self.unique_name(node.name or node.op_type)
        else:
            self._taken.add(node.name)
        self._taken.update(o for o in node.output if o)
        ref = self.graph.node.add()
        ref.CopyFrom(node)
        self._invalidate()
        return ref

    def make_node(
        self,
        op_type: str,
        inputs: Sequence[str],
        *,
        name_hint: Optional[str] = None,
        num_outputs: int = 1,
        domain: str = "",
        **attrs,
    ) -> onnx.NodeProto:
        """Create, name and append a node with freshly named outputs."""
        name = self.unique_name(name_hint or op_type)
        outputs = [self.unique_name(f"{name}_output_{i}") for i in range(num_outputs)]
        node = helper.make_node(op_type, list(inputs), outputs, name=name, domain=domain or None, **attrs)
        ref = self.graph.node.add()
        ref.CopyFrom(node)
        self._invalidate()
        return ref

    def add_constant(self, value, hint: str, dtype=None) -> str:
        """Add `value` as an initializer and return its tensor name."""
        name = self.unique_name(hint)
        arr = np.asarray(value, dtype=dtype)
        self.graph.initializer.add().CopyFrom(numpy_helper.from_array(arr, name))
        self._invalidate()
        return name

    def constant_value(self, name: str) -> Optional[np.ndarray]:
        """Return the value of an initializer or Constant-node output, else None."""
        for t in self.graph.initializer:
            if t.name == name:
                return numpy_helper.to_array(t)
        prod = self.producer(name)
        if prod is None or prod.op_type != "Constant" or (prod.domain or "") not in ("", "ai.onnx"):
            return None
        for a in prod.attribute:
            if a.name == "value":
                return numpy_helper.to_array(a.t)
            if a.name == "value_int":
                return np.asarray(a.i, dtype=np.int64)
            if a.name == "value_ints":
                return np.asarray(list(a.ints), dtype=np.int64)
            if a.name == "value_float":
                return np.asarray(a.f, dtype=np.float32)
            if a.name == "value_floats":
                return np.asarray(list(a.floats), dtype=np.float32)
        return None

    def replace_input(self, node: onnx.NodeProto, index: int, new: str) -> None:
        node.input[index] = new
        self._invalidate()

    def replace_all_uses(self, old: str, new: str, *, exclude: Iterable[str] = ()) -> int:
        """Redirect every consumer of `old` to `new`.

        Nodes named in `exclude` keep reading `old` (typically the node that
        produces `new` from `old`). Tensors captured implicitly by If/Loop/Scan
        bodies are renamed as well, unless a body shadows `old` with a local
        name. A subgraph output that names `old` directly is not renamed.
        Returns the number of rewired inputs.
        """
        if old == new:
            return 0
        skip = set(exclude)
        n_rewired = 0
        for node in self.graph.node:
            if node.name in skip:
                continue
            for i, inp in enumerate(node.input):
                if inp == old:
                    node.input[i] = new
                    n_rewired += 1
            n_rewired += _rename_in_subgraphs(node, old, new)
        if old in self.result_names():
            n_rewired += self._rewire_result(old, new, skip)
        self._invalidate()
        return n_rewired

    def _rewire_result(self, old: str, new: str, skip: Set[str]) -> int:
        # Result names are tensor names, so the old producer's output is renamed
        # and the result is re-produced from `new` through an Identity.
        prod = self.producer(old)
        if prod is None:
            LOGGER.debug("Result '%s' is a graph input; left untouched", old)
            return 0
        moved = self.unique_name(f"{old}_replaced")
        for i, o in enumerate(prod.output):
            if o == old:
                prod.output[i] = moved
        for node in self.graph.node:
            if node.name in skip:
                for i, inp in enumerate(node.input):
                    if inp == old:
                        node.input[i] = moved
        ident = helper.make_node("Identity", [new], [old], name=self.unique_name(f"{old}_identity"))
        self.graph.node.add().CopyFrom(ident)
        return 1

    # ---------------------------- structural cleanup ----------------------------

    def eliminate_dead_nodes(self) -> int:
        """Drop nodes that feed neither a Result nor a remaining Sink."""
        g = self.graph
        nodes = list(g.node)
        producer_of, _ = build_producers_consumers(nodes)

        live: Set[int] = set()
        stack: List[str] = [vi.name for vi in g.output]
        for idx, n in enumerate(nodes):
            if not any(o for o in n.output):
                live.add(idx)
                stack.extend(node_inputs(n))
        seen_values: Set[str] = set()
        while stack:
            v = stack.pop()
            if not v or v in seen_values:
                continue
            seen_values.add(v)
            p = producer_of.get(v)
            if p is None or p in live:
                continue
            live.add(p)
            stack.extend(node_inputs(nodes[p]))

        removed = len(nodes) - len(live)
        if removed:
            kept = [copy.deepcopy(nodes[i]) for i in range(len(nodes)) if i in live]
            del g.node[:]
            g.node.extend(kept)
            self._invalidate()
        return removed

    def topological_sort(self) -> None:
        ordered = [copy.deepcopy(n) for n in self.nodes_topological()]
        del self.graph.node[:]
        self.graph.node.extend(ordered)
        self._invalidate()

    def prune_value_info(self) -> int:
        """Drop value_info entries for tensors no longer present in the graph."""
        g = self.graph
        present: Set[str] = set(self.parameter_names()) | self.initializer_names()
        for n in g.node:
            present.update(o for o in n.output if o)
        stale = [i for i, vi in enumerate(g.value_info) if vi.name not in present]
        for i in reversed(stale):
            del g.value_info[i]
        return len(stale)

    def prune_initializers(self) -> int:
        """Drop initializers nothing reads any more."""
        g = self.graph
        used: Set[str] = {vi.name for vi in g.output}
        for n in g.node:
            used.update(node_inputs(n))
        stale = [i for i, t in enumerate(g.initializer) if t.name not in used]
        stale_names = {g.initializer[i].name for i in stale}
        for i in reversed(stale):
            del g.initializer[i]
        # Legacy IR versions also list initializers as inputs.
        for i in reversed([i for i, vi in enumerate(g.input) if vi.name in stale_names]):
            del g.input[i]
        if stale:
            self._invalidate()
        return len(stale)

    def opset_version(self, domain: str = "") -> Optional[int]:
        wanted = (domain,) if domain not in ("", "ai.onnx") else ("", "ai.onnx")
        for op in self.model.opset_import:
            if (op.domain or "") in wanted:
                return int(op.version)
        return None

    def ensure_opset(self, domain: str, version: int) -> None:
        for op in self.model.opset_import:
            if (op.domain or "") == domain:
                return
        self.model.opset_import.add().CopyFrom(helper.make_opsetid(domain, version))

    def dangling_references(self) -> List[Tuple[str, str]]:
        """Return (consumer, tensor) pairs whose tensor has no definition."""
        g = self.graph
        defined: Set[str] = {vi.name for vi in g.input} | self.initializer_names()
        for n in g.node:
            defined.update(o for o in n.output if o)
        missing: List[Tuple[str, str]] = []
        for n in g.node:
            for inp in node_inputs(n):
                if inp not in defined:
                    missing.append((n.name or n.op_type, inp))
        for vi in g.output:
            if vi.name not in defined:
                missing.append(("<result>", vi.name))
        return missing
