"""
Checkpoint Configuration - Controls when the executor snapshots a run.
"""

from dataclasses import dataclass


@dataclass
class CheckpointConfig:
    """
    Configuration for checkpoint behavior during graph execution.

    Checkpoints are opaque state snapshots handed to a CheckpointStore; the
    executor only decides when to take them.
    """

    enabled: bool = True

    # When to checkpoint
    checkpoint_on_node_complete: bool = True
    checkpoint_on_halt: bool = True  # Snapshot the last good state on structural halts

    # Pruning (time-based)
    max_age_days: int = 7
    prune_every_n_nodes: int = 0  # 0 disables in-run pruning

    def should_checkpoint_node_complete(self) -> bool:
        return self.enabled and self.checkpoint_on_node_complete

    def should_checkpoint_halt(self) -> bool:
        return self.enabled and self.checkpoint_on_halt

    def should_prune_checkpoints(self, nodes_executed: int) -> bool:
        """
        Check if old checkpoints should be pruned at this point of the run.

        Args:
            nodes_executed: Number of nodes executed so far
        """
        return (
            self.enabled
            and self.prune_every_n_nodes > 0
            and nodes_executed > 0
            and nodes_executed % self.prune_every_n_nodes == 0
        )


DEFAULT_CHECKPOINT_CONFIG = CheckpointConfig()

# Disabled configuration (no checkpointing)
DISABLED_CHECKPOINT_CONFIG = CheckpointConfig(enabled=False)
