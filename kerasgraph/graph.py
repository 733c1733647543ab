# kerasgraph/graph.py

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import BuildOptions, ModelSchema, KERAS2_SCHEMA
from .errors import ConfigurationError, ShapeInferenceError, UnsupportedTopologyError
from .layers import OutputType, get_layer_spec
from .ranking import nearest_nodes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeConfig:
    """
    Parsed description of one layer, as produced by a configuration parser.
    """

    name: str
    class_name: str
    inbound: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    input_shape: Optional[Tuple[Optional[int], ...]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeConfig":
        """
        Build from a plain mapping with keys ``name``, ``class_name`` and the
        optional ``inbound``, ``params`` and ``input_shape``.
        """
        for key in ("name", "class_name"):
            if not data.get(key):
                raise ConfigurationError(f"Node config is missing required field {key!r}: {dict(data)!r}")
        input_shape = data.get("input_shape")
        return cls(
            name=str(data["name"]),
            class_name=str(data["class_name"]),
            inbound=tuple(str(n) for n in data.get("inbound", ())),
            params=dict(data.get("params", {})),
            input_shape=None if input_shape is None else tuple(input_shape),
        )


@dataclass
class Node:
    """
    A layer in the graph under construction.

    ``inbound`` is only edited by the builder while resolving forward
    references; after build() returns, nodes are treated as immutable.
    """

    name: str
    class_name: str
    inbound: List[str]
    params: Dict[str, Any]
    loop_capable: bool = False
    input_shape: Optional[Tuple[Optional[int], ...]] = None
    output_type: Optional[OutputType] = None
    clone_of: Optional[str] = None

    def clone(self, name: str, inbound: Sequence[str], schema: ModelSchema) -> "Node":
        params = dict(self.params)
        params[schema.layer_field_name] = name
        return Node(
            name=name,
            class_name=self.class_name,
            inbound=list(inbound),
            params=params,
            loop_capable=self.loop_capable,
            clone_of=self.name,
        )


class Graph:
    """
    Ordered, name-addressed collection of Nodes produced by GraphBuilder.

    Responsibilities:
      - Keep the final topological order (``order``) and name -> Node mapping.
      - Expose inferred output types, declared inputs/outputs and the clone
        record of the build that produced it.
    """

    def __init__(
        self,
        nodes: Iterable[Node],
        inputs: Optional[Sequence[str]] = None,
        outputs: Optional[Sequence[str]] = None,
        clones: Optional[Mapping[str, List[str]]] = None,
    ) -> None:
        self.nodes: "OrderedDict[str, Node]" = OrderedDict()
        for node in nodes:
            if node.name in self.nodes:
                raise ConfigurationError(f"Duplicate node name {node.name!r}")
            self.nodes[node.name] = node
        self.clones: Dict[str, List[str]] = {k: list(v) for k, v in (clones or {}).items()}
        self.inputs: List[str] = list(inputs) if inputs is not None else [
            n.name for n in self.nodes.values() if get_layer_spec(n.class_name).kind == "input"
        ]
        self.outputs: List[str] = list(outputs) if outputs is not None else self._sinks()
        self._positions = {name: idx for idx, name in enumerate(self.nodes)}

    def _sinks(self) -> List[str]:
        consumed = {ref for node in self.nodes.values() for ref in node.inbound}
        return [name for name in self.nodes if name not in consumed]

    @property
    def order(self) -> List[str]:
        return list(self.nodes)

    @property
    def output_types(self) -> Dict[str, Optional[OutputType]]:
        return {name: node.output_type for name, node in self.nodes.items()}

    def __getitem__(self, name: str) -> Node:
        return self.nodes[name]

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def index(self, name: str) -> int:
        return self._positions[name]

    def consumers(self, name: str) -> List[str]:
        """Names of the nodes that list ``name`` as an inbound reference."""
        return [node.name for node in self.nodes.values() if name in node.inbound]

    def validate(self) -> None:
        """
        Check that every inbound reference resolves and every non-input node
        received an output type.
        """
        for node in self.nodes.values():
            for ref in node.inbound:
                if ref not in self.nodes:
                    raise ShapeInferenceError(f"Inbound reference {ref!r} is not part of the graph", node=node.name)
            if node.output_type is None:
                raise ShapeInferenceError("No output type could be inferred", node=node.name)


class GraphBuilder:
    """
    Turns an ordered sequence of NodeConfigs into a Graph.

    The build runs as separate passes over an arena of nodes addressed by
    stable integer index:
      1. parse configs into the arena (declaration order);
      2. detect forward references and append clones to the arena, each
         anchored after the node it now consumes;
      3. derive the final order from the anchors;
      4. redirect consumers of cloned nodes to the nearest copy;
      5. infer output types in final order.

    A builder holds no per-build state, so one instance can serve concurrent
    builds.
    """

    def __init__(
        self,
        schema: Optional[ModelSchema] = None,
        options: Optional[BuildOptions] = None,
    ) -> None:
        self.schema = schema or KERAS2_SCHEMA
        self.options = options or BuildOptions()

    # --- Public API ----------------------------------------------------------

    def build(
        self,
        configs: Sequence[NodeConfig],
        inputs: Optional[Sequence[str]] = None,
        outputs: Optional[Sequence[str]] = None,
    ) -> Graph:
        arena = self.parse(configs)
        consumers = self._collect_consumers(arena)
        clones, anchors = self.resolve_forward_references(arena)
        order = self.derive_order(arena, anchors)
        by_name = {node.name: node for node in arena}
        self.repair_inputs(by_name, order, clones, consumers)

        graph = Graph((by_name[name] for name in order), inputs=inputs, outputs=outputs, clones=clones)
        self.infer_output_types(graph)
        if self.options.strict:
            graph.validate()
        return graph

    # --- Passes --------------------------------------------------------------

    def parse(self, configs: Sequence[NodeConfig]) -> List[Node]:
        arena: List[Node] = []
        seen = set()
        for config in configs:
            if not config.name:
                raise ConfigurationError(f"Node config has no name: {config!r}")
            if config.name in seen:
                raise ConfigurationError(f"Duplicate node name {config.name!r}")
            seen.add(config.name)
            spec = get_layer_spec(config.class_name)
            loop_capable = (
                spec.loop_capable
                or config.class_name in self.schema.lambda_class_names
                or config.class_name in self.options.loop_capable_classes
            )
            arena.append(
                Node(
                    name=config.name,
                    class_name=config.class_name,
                    inbound=list(config.inbound),
                    params=dict(config.params),
                    loop_capable=loop_capable,
                    input_shape=config.input_shape,
                )
            )
        for node in arena:
            for ref in node.inbound:
                if ref not in seen:
                    raise ConfigurationError(f"Node {node.name!r} references undeclared node {ref!r}")
        return arena

    def _collect_consumers(self, arena: Sequence[Node]) -> Dict[str, List[str]]:
        consumers: Dict[str, List[str]] = {}
        for node in arena:
            for ref in node.inbound:
                names = consumers.setdefault(ref, [])
                if node.name not in names:
                    names.append(node.name)
        return consumers

    def resolve_forward_references(
        self, arena: List[Node]
    ) -> Tuple[Dict[str, List[str]], Dict[int, List[int]]]:
        """
        Break every forward reference by cloning a loop-capable node.

        The consumer holding the back-edge is cloned when it is loop-capable;
        otherwise the referenced producer is, and it must then be loop-capable
        itself. Either way the clone is named ``"<consumer>-<producer>"``,
        takes the producer as its only input and sits right after it.

        Returns the clone record (node name -> clone names) and the anchors
        (arena index -> arena indices of clones placed right after it).
        Mutates ``arena``: clones are appended and forward references removed
        from the consumers' inbound lists.
        """
        declared = len(arena)
        index = {node.name: idx for idx, node in enumerate(arena)}
        taken = set(index)
        clones: Dict[str, List[str]] = {}
        anchors: Dict[int, List[int]] = {}

        for idx in range(declared):
            node = arena[idx]
            forward: List[str] = []
            for ref in node.inbound:
                if index[ref] > idx and ref not in forward:
                    forward.append(ref)
            for ref in forward:
                producer = arena[index[ref]]
                if node.loop_capable:
                    source = node
                elif producer.loop_capable:
                    source = producer
                else:
                    raise UnsupportedTopologyError(node.name, ref)
                clone_name = f"{node.name}-{ref}"
                if clone_name in taken:
                    raise ConfigurationError(
                        f"Cannot clone {source.name!r}: name {clone_name!r} is already in use"
                    )
                taken.add(clone_name)
                arena.append(source.clone(clone_name, [ref], self.schema))
                anchors.setdefault(index[ref], []).append(len(arena) - 1)
                clones.setdefault(source.name, []).append(clone_name)
                logger.info(
                    "Found input %s at node %s with potential cycle; cloned %s as %s",
                    ref, node.name, source.name, clone_name,
                )
            if forward:
                node.inbound = [ref for ref in node.inbound if ref not in forward]
        return clones, anchors

    def derive_order(self, arena: Sequence[Node], anchors: Mapping[int, List[int]]) -> List[str]:
        order: List[str] = []
        declared = len(arena) - sum(len(v) for v in anchors.values())
        for idx in range(declared):
            order.append(arena[idx].name)
            for clone_idx in anchors.get(idx, ()):
                order.append(arena[clone_idx].name)
        return order

    def repair_inputs(
        self,
        nodes: Mapping[str, Node],
        order: Sequence[str],
        clones: Mapping[str, List[str]],
        consumers: Mapping[str, List[str]],
    ) -> None:
        """
        Point consumers of each cloned node at the copy nearest to them.

        The first consumer within the two nearest candidates keeps the edge
        to the original; a consumer that already takes a previously handled
        consumer as input, or whose nearest pair excludes the original while
        competing with other consumers, is redirected to its nearest copy.
        """
        for original, clone_names in clones.items():
            targets = consumers.get(original, [])
            processed: List[str] = []
            for consumer_name in targets:
                consumer = nodes[consumer_name]
                if original not in consumer.inbound:
                    logger.debug("Skipping %s: no longer consumes %s", consumer_name, original)
                    continue
                keep = not any(done in consumer.inbound for done in processed)
                nearest = nearest_nodes(original, consumer_name, clone_names, order, k=2)
                if len(targets) > 1 and original not in nearest:
                    keep = False
                processed.append(consumer_name)
                if keep:
                    logger.debug("%s keeps input %s", consumer_name, original)
                    continue
                position = consumer.inbound.index(original)
                consumer.inbound[position] = nearest[0]
                logger.debug("%s input %s redirected to %s", consumer_name, original, nearest[0])

    def infer_output_types(self, graph: Graph) -> None:
        resolved: Dict[str, OutputType] = {}
        order = graph.order
        for pos, name in enumerate(order):
            node = graph[name]
            spec = get_layer_spec(node.class_name)
            if spec.kind == "input":
                node.output_type = self._input_type(graph, order, pos)
                resolved[name] = node.output_type
                continue

            inbound_types = [resolved[ref] for ref in node.inbound if ref in resolved]
            try:
                out = spec.infer(node.params, inbound_types, self.schema)  # type: ignore[misc]
            except ShapeInferenceError as exc:
                if not inbound_types:
                    # Inputs are produced further along a repaired loop.
                    logger.debug("No resolved inbound types for %s; leaving it untyped", name)
                    node.output_type = None
                    continue
                if exc.node is None:
                    raise ShapeInferenceError(str(exc), node=name) from exc
                raise
            node.output_type = out
            resolved[name] = out

    def _input_type(self, graph: Graph, order: Sequence[str], pos: int) -> OutputType:
        node = graph[order[pos]]
        shape = node.input_shape or self.options.input_shape
        following = [graph[n] for n in order[pos + 1:]]
        if shape is None:
            for later in following:
                if later.input_shape is not None:
                    shape = later.input_shape
                    break
        if shape is None:
            raise ShapeInferenceError("Input node has no declared or inherited shape", node=node.name)

        # Inputs carry no data format; take it from the first consumer that has one.
        channels_last = True
        for later in following:
            if node.name in later.inbound and self.schema.layer_field_data_format in later.params:
                try:
                    channels_last = self.schema.is_channels_last(later.params[self.schema.layer_field_data_format])
                except ValueError as exc:
                    raise ConfigurationError(str(exc)) from None
                break
        try:
            return OutputType.from_shape(shape, channels_last=channels_last)
        except ShapeInferenceError as exc:
            raise ShapeInferenceError(str(exc), node=node.name) from exc


def build_graph(
    configs: Sequence[Any],
    schema: Optional[ModelSchema] = None,
    options: Optional[BuildOptions] = None,
    inputs: Optional[Sequence[str]] = None,
    outputs: Optional[Sequence[str]] = None,
) -> Graph:
    """
    Functional shortcut for GraphBuilder(schema, options).build(configs).

    ``configs`` may mix NodeConfig instances and plain mappings.
    """
    parsed = [c if isinstance(c, NodeConfig) else NodeConfig.from_dict(c) for c in configs]
    return GraphBuilder(schema, options).build(parsed, inputs=inputs, outputs=outputs)
