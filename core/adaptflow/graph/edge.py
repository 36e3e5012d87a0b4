"""
Edge Protocol - How nodes connect in a graph.

Edges define the next node after a source completes. Each source has at most
one outgoing edge record; a conditional edge may itself branch many ways.

Edge Types:
- fixed: always go to ``target``
- conditional: call ``selector(state)`` to pick the next node. With a
  ``path_map`` the selector returns a label that is translated through the
  map; otherwise it returns the node id itself.

Graphs start at the ``START`` sentinel and finish when routing reaches
``END``. Neither sentinel is a real node.
"""

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from adaptflow.exceptions import GraphValidationError
from adaptflow.graph.node import NodeAction, NodeSpec

START = "__start__"
END = "__end__"

SENTINELS = frozenset({START, END})

Selector = Callable[..., Any]
TransitionHook = Callable[..., Any]


class EdgeKind(StrEnum):
    """How an edge picks its destination."""

    FIXED = "fixed"
    CONDITIONAL = "conditional"


class EdgeSpec(BaseModel):
    """
    Specification for the outgoing edge of a node.

    Examples:
        # Unconditional
        EdgeSpec(source="extract", target="summarize")

        # Conditional, selector returns a node id
        EdgeSpec(
            source="supervise",
            kind=EdgeKind.CONDITIONAL,
            selector=lambda state: "rework" if state["needs_rework"] else END,
        )

        # Conditional with labels
        EdgeSpec(
            source="route",
            kind=EdgeKind.CONDITIONAL,
            selector=lambda state: state["depth"],
            path_map={"deep": "deep_analysis", "basic": END},
        )
    """

    source: str = Field(description="Source node ID (or START)")
    target: str | None = Field(default=None, description="Target node ID for FIXED edges")
    kind: EdgeKind = EdgeKind.FIXED
    selector: Selector | None = Field(
        default=None, description="Callable (state) -> node id or label, sync or async"
    )
    path_map: dict[str, str] | None = Field(
        default=None, description="Selector label -> node id translation"
    )
    description: str = ""

    model_config = {"extra": "allow"}

    @property
    def is_conditional(self) -> bool:
        return self.kind == EdgeKind.CONDITIONAL

    def possible_targets(self) -> list[str] | None:
        """Statically known destinations, or None when the selector is open-ended."""
        if not self.is_conditional:
            return [self.target] if self.target else []
        if self.path_map is not None:
            return list(self.path_map.values())
        return None

    def translate(self, selected: Any) -> str | None:
        """Map a selector's return value to a node id (None if unmapped)."""
        if self.path_map is None:
            return selected if isinstance(selected, str) else None
        if not isinstance(selected, str):
            selected = str(selected)
        return self.path_map.get(selected)


class GraphSpec(BaseModel):
    """
    A complete workflow graph: nodes, edges and an optional transition hook.

    Example:
        graph = (
            GraphSpec(id="transcript-analysis")
            .add_node("extract", extract)
            .add_node("summarize", summarize)
            .add_edge(START, "extract")
            .add_edge("extract", "summarize")
            .add_edge("summarize", END)
        )
        final_state = await GraphExecutor().execute(graph, {"transcript": text})
    """

    id: str = "graph"
    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    edges: list[EdgeSpec] = Field(default_factory=list, description="All edge specifications")
    transition_hook: TransitionHook | None = Field(
        default=None,
        description="Callable (previous, new, node_id) -> state run after every node",
    )

    # Execution limits
    max_steps: int | None = Field(
        default=None,
        description="Maximum node executions per run. None uses the engine default.",
    )

    description: str = ""

    model_config = {"extra": "allow"}

    # === BUILDING ===

    def add_node(
        self,
        node: NodeSpec | str,
        action: NodeAction | None = None,
        **kwargs: Any,
    ) -> "GraphSpec":
        """Add a node, either a ready NodeSpec or an id plus action."""
        if isinstance(node, str):
            if action is None:
                raise ValueError(f"Node '{node}' needs an action")
            node = NodeSpec(id=node, action=action, **kwargs)
        self.nodes.append(node)
        return self

    def add_edge(self, source: str, target: str, description: str = "") -> "GraphSpec":
        self.edges.append(EdgeSpec(source=source, target=target, description=description))
        return self

    def add_conditional_edge(
        self,
        source: str,
        selector: Selector,
        path_map: dict[str, str] | None = None,
        description: str = "",
    ) -> "GraphSpec":
        self.edges.append(
            EdgeSpec(
                source=source,
                kind=EdgeKind.CONDITIONAL,
                selector=selector,
                path_map=path_map,
                description=description,
            )
        )
        return self

    def set_transition_hook(self, hook: TransitionHook | None) -> "GraphSpec":
        """Install the hook called as ``hook(previous, new, node_id)`` after each node."""
        self.transition_hook = hook
        return self

    # === LOOKUP ===

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    def get_outgoing_edge(self, node_id: str) -> EdgeSpec | None:
        """The edge leaving ``node_id``. If several were added, the first wins."""
        for edge in self.edges:
            if edge.source == node_id:
                return edge
        return None

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges that can statically reach a node."""
        incoming = []
        for edge in self.edges:
            targets = edge.possible_targets()
            if targets is not None and node_id in targets:
                incoming.append(edge)
        return incoming

    # === VALIDATION ===

    def validate(self) -> list[str]:
        """Validate the graph structure. Returns human-readable errors."""
        errors = []

        seen_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in SENTINELS:
                errors.append(f"Node id '{node.id}' is reserved")
            if node.id in seen_nodes:
                errors.append(f"Duplicate node id: '{node.id}'")
            seen_nodes.add(node.id)

        # Check edge references
        seen_sources: set[str] = set()
        for edge in self.edges:
            if edge.source == END:
                errors.append("END cannot have outgoing edges")
            elif edge.source != START and edge.source not in seen_nodes:
                errors.append(f"Edge references missing source '{edge.source}'")

            if edge.source in seen_sources:
                errors.append(f"Node '{edge.source}' has more than one outgoing edge")
            seen_sources.add(edge.source)

            if edge.is_conditional and edge.selector is None:
                errors.append(f"Conditional edge from '{edge.source}' has no selector")
            if not edge.is_conditional and not edge.target:
                errors.append(f"Edge from '{edge.source}' has no target")

            for target in edge.possible_targets() or []:
                if target == START:
                    errors.append(f"Edge from '{edge.source}' routes back to START")
                elif target != END and target not in seen_nodes:
                    errors.append(
                        f"Edge from '{edge.source}' references missing target '{target}'"
                    )

        if START not in seen_sources:
            errors.append("No edge from START")

        # Dead ends
        for node in self.nodes:
            if node.id not in seen_sources:
                errors.append(f"Node '{node.id}' has no outgoing edge")

        # Unreachable nodes. An open-ended selector can reach anything, so
        # the check only runs when every reachable edge is statically known.
        reachable: set[str] = set()
        to_visit = [START]
        open_ended = False
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            edge = self.get_outgoing_edge(current)
            if edge is None:
                continue
            targets = edge.possible_targets()
            if targets is None:
                open_ended = True
                continue
            to_visit.extend(targets)

        if not open_ended:
            for node in self.nodes:
                if node.id not in reachable:
                    errors.append(f"Node '{node.id}' is unreachable from START")

        return errors

    def compile(self) -> "GraphSpec":
        """Validate and return self, raising GraphValidationError on any error."""
        errors = self.validate()
        if errors:
            raise GraphValidationError(errors)
        return self
