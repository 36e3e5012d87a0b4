"""
Checkpoint Schema - Run state snapshots.

A checkpoint records the execution state and position of one run at a node
boundary. The engine treats the state as an opaque blob; the store decides
how it is persisted.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Checkpoint(BaseModel):
    """Single snapshot in a run's timeline."""

    # Identity
    checkpoint_id: str  # Format: cp_{type}_{node_id}_{timestamp}_{suffix}
    checkpoint_type: str  # "node_complete" | "halt"
    run_id: str
    graph_id: str = ""

    created_at: str  # ISO 8601 format

    # Position
    current_node: str | None = None
    next_node: str | None = None
    execution_path: list[str] = Field(default_factory=list)
    node_visit_counts: dict[str, int] = Field(default_factory=dict)
    steps_executed: int = 0

    # Snapshot
    state: dict[str, Any] = Field(default_factory=dict)

    # True if no node had failed before this checkpoint
    is_clean: bool = True
    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        checkpoint_type: str,
        run_id: str,
        current_node: str,
        state: dict[str, Any],
        execution_path: list[str],
        graph_id: str = "",
        next_node: str | None = None,
        node_visit_counts: dict[str, int] | None = None,
        steps_executed: int = 0,
        is_clean: bool = True,
        description: str = "",
    ) -> "Checkpoint":
        """Create a checkpoint with a generated ID and timestamp."""
        now = datetime.now()
        suffix = uuid.uuid4().hex[:6]
        checkpoint_id = (
            f"cp_{checkpoint_type}_{current_node}_{now.strftime('%Y%m%d_%H%M%S')}_{suffix}"
        )

        if not description:
            description = f"{checkpoint_type.replace('_', ' ').title()}: {current_node}"

        return cls(
            checkpoint_id=checkpoint_id,
            checkpoint_type=checkpoint_type,
            run_id=run_id,
            graph_id=graph_id,
            created_at=now.isoformat(),
            current_node=current_node,
            next_node=next_node,
            execution_path=list(execution_path),
            node_visit_counts=dict(node_visit_counts or {}),
            steps_executed=steps_executed,
            state=state,
            is_clean=is_clean,
            description=description,
        )


class CheckpointSummary(BaseModel):
    """Lightweight checkpoint metadata kept in the index."""

    checkpoint_id: str
    checkpoint_type: str
    created_at: str
    current_node: str | None = None
    next_node: str | None = None
    is_clean: bool = True

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            checkpoint_type=checkpoint.checkpoint_type,
            created_at=checkpoint.created_at,
            current_node=checkpoint.current_node,
            next_node=checkpoint.next_node,
            is_clean=checkpoint.is_clean,
        )


class CheckpointIndex(BaseModel):
    """Manifest of all checkpoints for a run."""

    run_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None

    model_config = {"extra": "allow"}

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoints.append(CheckpointSummary.from_checkpoint(checkpoint))
        self.latest_checkpoint_id = checkpoint.checkpoint_id

    def remove_checkpoint(self, checkpoint_id: str) -> None:
        self.checkpoints = [cp for cp in self.checkpoints if cp.checkpoint_id != checkpoint_id]
        if self.latest_checkpoint_id == checkpoint_id:
            self.latest_checkpoint_id = (
                self.checkpoints[-1].checkpoint_id if self.checkpoints else None
            )

    def latest_clean(self) -> CheckpointSummary | None:
        """The most recent checkpoint taken before any node failure."""
        for summary in reversed(self.checkpoints):
            if summary.is_clean:
                return summary
        return None
