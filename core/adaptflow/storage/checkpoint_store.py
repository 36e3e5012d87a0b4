"""
Checkpoint Store - File-backed checkpoint persistence with atomic writes.

Layout:
    <base_path>/
        <run_id>/
            index.json                    # CheckpointIndex manifest
            cp_{type}_{node}_{ts}_{x}.json  # Individual checkpoints

All file I/O runs in a worker thread so saving never blocks the event loop.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path

from adaptflow.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary
from adaptflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Saves and loads run checkpoints keyed by run id + checkpoint id.

    Example:
        store = CheckpointStore(tmp_path)
        await store.save_checkpoint(checkpoint)
        latest = await store.load_checkpoint(checkpoint.run_id)
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self._index_locks: dict[str, asyncio.Lock] = {}

    def _run_dir(self, run_id: str) -> Path:
        return self.base_path / run_id

    def _index_path(self, run_id: str) -> Path:
        return self._run_dir(run_id) / "index.json"

    def _checkpoint_path(self, run_id: str, checkpoint_id: str) -> Path:
        return self._run_dir(run_id) / f"{checkpoint_id}.json"

    def _index_lock(self, run_id: str) -> asyncio.Lock:
        # Created lazily; setdefault keeps a single lock per run
        return self._index_locks.setdefault(run_id, asyncio.Lock())

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """
        Persist a checkpoint, then record it in the run's index.

        Raises:
            OSError: If the file write fails
        """
        path = self._checkpoint_path(checkpoint.run_id, checkpoint.checkpoint_id)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(checkpoint.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

        async with self._index_lock(checkpoint.run_id):
            index = await self.load_index(checkpoint.run_id)
            if index is None:
                index = CheckpointIndex(run_id=checkpoint.run_id)
            index.add_checkpoint(checkpoint)
            await self._write_index(index)

    async def load_checkpoint(
        self,
        run_id: str,
        checkpoint_id: str | None = None,
    ) -> Checkpoint | None:
        """
        Load a checkpoint by ID, or the run's latest when no ID is given.

        Returns:
            Checkpoint, or None if not found or unreadable
        """
        if checkpoint_id is None:
            index = await self.load_index(run_id)
            if not index or not index.latest_checkpoint_id:
                logger.warning(f"No checkpoints found for run {run_id}")
                return None
            checkpoint_id = index.latest_checkpoint_id

        path = self._checkpoint_path(run_id, checkpoint_id)

        def _read() -> Checkpoint | None:
            if not path.exists():
                logger.warning(f"Checkpoint file not found: {path}")
                return None
            try:
                return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load checkpoint {checkpoint_id}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def load_index(self, run_id: str) -> CheckpointIndex | None:
        path = self._index_path(run_id)

        def _read() -> CheckpointIndex | None:
            if not path.exists():
                return None
            try:
                return CheckpointIndex.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load checkpoint index for run {run_id}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def list_checkpoints(
        self,
        run_id: str,
        checkpoint_type: str | None = None,
        is_clean: bool | None = None,
    ) -> list[CheckpointSummary]:
        """List a run's checkpoints, optionally filtered by type or clean flag."""
        index = await self.load_index(run_id)
        if not index:
            return []

        summaries = index.checkpoints
        if checkpoint_type:
            summaries = [cp for cp in summaries if cp.checkpoint_type == checkpoint_type]
        if is_clean is not None:
            summaries = [cp for cp in summaries if cp.is_clean == is_clean]
        return summaries

    async def delete_checkpoint(self, run_id: str, checkpoint_id: str) -> bool:
        """
        Delete a checkpoint file and drop it from the index.

        Returns:
            True if deleted, False if not found
        """
        path = self._checkpoint_path(run_id, checkpoint_id)

        def _delete() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        deleted = await asyncio.to_thread(_delete)
        if not deleted:
            logger.warning(f"Checkpoint {checkpoint_id} not found for run {run_id}")
            return False

        async with self._index_lock(run_id):
            index = await self.load_index(run_id)
            if index is not None:
                index.remove_checkpoint(checkpoint_id)
                await self._write_index(index)

        logger.info(f"Deleted checkpoint {checkpoint_id}")
        return True

    async def prune_checkpoints(self, run_id: str, max_age_days: int = 7) -> int:
        """
        Delete a run's checkpoints older than ``max_age_days``.

        Returns:
            Number of checkpoints deleted
        """
        index = await self.load_index(run_id)
        if not index or not index.checkpoints:
            return 0

        cutoff = datetime.now() - timedelta(days=max_age_days)
        expired = []
        for summary in index.checkpoints:
            try:
                if datetime.fromisoformat(summary.created_at) < cutoff:
                    expired.append(summary.checkpoint_id)
            except ValueError:
                logger.warning(f"Unparseable timestamp on checkpoint {summary.checkpoint_id}")

        deleted = 0
        for checkpoint_id in expired:
            if await self.delete_checkpoint(run_id, checkpoint_id):
                deleted += 1

        if deleted:
            logger.info(f"Pruned {deleted} checkpoints older than {max_age_days} days")
        return deleted

    async def _write_index(self, index: CheckpointIndex) -> None:
        """Write the index atomically. Callers hold the run's index lock."""
        path = self._index_path(index.run_id)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
