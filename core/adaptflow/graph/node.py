"""
Node Protocol - the unit of work in a graph.

A node pairs an id with an action. The action receives the current
execution state (or a ``StateView`` when the node declares its keys) and
returns a mapping that is merged over the state, or ``None`` for no change.
Actions may be plain functions or coroutine functions.
"""

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

NodeAction = Callable[..., Any]


class NodeSpec(BaseModel):
    """
    Specification for a single step.

    Examples:
        NodeSpec(id="extract_topics", action=extract_topics)

        # Declared keys: the action receives a StateView
        NodeSpec(
            id="summarize",
            action=summarize,
            reads=["transcript"],
            writes=["summary"],
        )

        # Rework loop: allow the node to run up to three times per run
        NodeSpec(id="refine", action=refine, max_visits=3)
    """

    id: str
    action: NodeAction = Field(description="Callable (state) -> mapping | None, sync or async")
    name: str = ""
    description: str = ""

    # Declared state access
    reads: list[str] = Field(
        default_factory=list, description="State keys the action may read (empty = any)"
    )
    writes: list[str] = Field(
        default_factory=list, description="State keys the action may write (empty = any)"
    )

    # Revisit budget
    max_visits: int | None = Field(
        default=None,
        description=(
            "Maximum executions of this node per run. None uses the engine default, "
            "0 means unlimited (bounded only by the graph's max_steps)."
        ),
    )

    model_config = {"extra": "allow"}

    @property
    def declares_access(self) -> bool:
        return bool(self.reads or self.writes)

    @property
    def display_name(self) -> str:
        return self.name or self.id
