"""Persisted record schemas."""

from adaptflow.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary

__all__ = ["Checkpoint", "CheckpointIndex", "CheckpointSummary"]
