"""Storage backends for run checkpoints."""

from adaptflow.storage.checkpoint_store import CheckpointStore

__all__ = ["CheckpointStore"]
