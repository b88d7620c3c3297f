"""
Checkpoint Store - Where run checkpoints are kept for resume.

Persistence is best-effort: ``persist()`` never raises. A failed write is
logged and the run carries on with its in-memory copy.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from flowforge.errors import CheckpointPersistenceError
from flowforge.schemas.checkpoint import Checkpoint, CheckpointIndex
from flowforge.utils.io import atomic_write

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.\-]+$")


class CheckpointStore(ABC):
    """Base class for checkpoint stores."""

    def create(
        self,
        execution_id: str,
        node_id: str | None,
        variables: dict[str, Any],
        completed_nodes: list[str] | None = None,
        retried_nodes: dict[str, int] | None = None,
    ) -> Checkpoint:
        """Snapshot current progress (not yet persisted)."""
        return Checkpoint.create(
            execution_id=execution_id,
            node_id=node_id,
            variables=variables,
            completed_nodes=completed_nodes,
            retried_nodes=retried_nodes,
        )

    async def persist(self, checkpoint: Checkpoint) -> bool:
        """
        Save a checkpoint, swallowing failures.

        Returns:
            True if written, False if the write failed
        """
        try:
            await self.save_checkpoint(checkpoint)
        except Exception as e:
            error = CheckpointPersistenceError(
                f"Checkpoint {checkpoint.checkpoint_id} not persisted: {e}"
            )
            logger.error(f"💾 {error}")
            return False
        return True

    @abstractmethod
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Write a checkpoint. May raise."""

    @abstractmethod
    async def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        """All checkpoints of an execution, oldest first."""

    async def latest(self, execution_id: str) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(execution_id)
        return checkpoints[-1] if checkpoints else None

    def discard(self, execution_id: str) -> None:
        """
        Called when the runtime evicts a finished execution.

        Stores that hold checkpoints in process memory release them here.
        Durable stores keep theirs for later resume.
        """


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store; the runtime's default."""

    def __init__(self, max_per_execution: int | None = 100):
        """
        Args:
            max_per_execution: Oldest checkpoints beyond this are dropped
                (None keeps everything)
        """
        self._by_execution: dict[str, list[Checkpoint]] = {}
        self._max_per_execution = max_per_execution

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        kept = self._by_execution.setdefault(checkpoint.execution_id, [])
        kept.append(checkpoint)
        if self._max_per_execution is not None:
            del kept[: -self._max_per_execution]
        logger.debug(f"Stored checkpoint {checkpoint.checkpoint_id} in memory")

    async def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        return list(self._by_execution.get(execution_id, []))

    def clear(self, execution_id: str) -> None:
        self._by_execution.pop(execution_id, None)

    def discard(self, execution_id: str) -> None:
        self.clear(execution_id)


class FileCheckpointStore(CheckpointStore):
    """
    JSON files on disk, written atomically.

    Layout:
        {base_path}/
            {execution_id}/
                index.json          # CheckpointIndex, creation order
                {checkpoint_id}.json
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        # Serializes read-modify-write of index.json
        self._index_lock = asyncio.Lock()

    # --- paths ---

    def _validate_id(self, value: str) -> None:
        """Reject ids that could escape base_path."""
        if not value or value in (".", "..") or not _SAFE_ID.match(value):
            raise ValueError(f"Invalid id for checkpoint storage: {value!r}")

    def _execution_dir(self, execution_id: str) -> Path:
        self._validate_id(execution_id)
        return self.base_path / execution_id

    def _checkpoint_path(self, execution_id: str, checkpoint_id: str) -> Path:
        self._validate_id(checkpoint_id)
        return self._execution_dir(execution_id) / f"{checkpoint_id}.json"

    def _index_path(self, execution_id: str) -> Path:
        return self._execution_dir(execution_id) / "index.json"

    # --- blocking helpers, run via asyncio.to_thread ---

    @staticmethod
    def _write_model(path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with atomic_write(path) as f:
            f.write(model.model_dump_json(indent=2))

    @staticmethod
    def _read_model(path: Path, model_type: type[BaseModel]) -> Any:
        if not path.exists():
            return None
        try:
            return model_type.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Unreadable {model_type.__name__} at {path}: {e}")
            return None

    # --- store API ---

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """
        Write the checkpoint file, then record it in the index.

        Raises:
            OSError: if a write fails
            ValueError: if an id is unsafe for use as a path
        """
        path = self._checkpoint_path(checkpoint.execution_id, checkpoint.checkpoint_id)
        await asyncio.to_thread(self._write_model, path, checkpoint)

        async with self._index_lock:
            index = await self.load_index(checkpoint.execution_id)
            if index is None:
                index = CheckpointIndex(execution_id=checkpoint.execution_id)
            index.add_checkpoint(checkpoint)
            await asyncio.to_thread(
                self._write_model, self._index_path(checkpoint.execution_id), index
            )
        logger.debug(f"Wrote checkpoint {checkpoint.checkpoint_id} to {path}")

    async def load_checkpoint(
        self,
        execution_id: str,
        checkpoint_id: str | None = None,
    ) -> Checkpoint | None:
        """Load one checkpoint by id, or the latest when checkpoint_id is None."""
        if checkpoint_id is None:
            index = await self.load_index(execution_id)
            if index is None or index.latest_checkpoint_id is None:
                return None
            checkpoint_id = index.latest_checkpoint_id

        path = self._checkpoint_path(execution_id, checkpoint_id)
        checkpoint = await asyncio.to_thread(self._read_model, path, Checkpoint)
        if checkpoint is None:
            logger.warning(f"Checkpoint {checkpoint_id} missing for {execution_id}")
        return checkpoint

    async def load_index(self, execution_id: str) -> CheckpointIndex | None:
        """The execution's index, or None if missing or corrupt."""
        return await asyncio.to_thread(
            self._read_model, self._index_path(execution_id), CheckpointIndex
        )

    async def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        index = await self.load_index(execution_id)
        if index is None:
            return []

        loaded = []
        for summary in index.checkpoints:
            checkpoint = await self.load_checkpoint(execution_id, summary.checkpoint_id)
            if checkpoint is not None:
                loaded.append(checkpoint)
        return loaded

    async def latest(self, execution_id: str) -> Checkpoint | None:
        return await self.load_checkpoint(execution_id)

    async def delete_checkpoint(self, execution_id: str, checkpoint_id: str) -> bool:
        """
        Remove a checkpoint file and its index entry.

        Returns:
            False if the checkpoint did not exist or could not be removed
        """
        path = self._checkpoint_path(execution_id, checkpoint_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Could not delete checkpoint {checkpoint_id}: {e}")
            return False

        async with self._index_lock:
            index = await self.load_index(execution_id)
            if index is not None:
                index.remove_checkpoint(checkpoint_id)
                await asyncio.to_thread(self._write_model, self._index_path(execution_id), index)

        logger.info(f"Deleted checkpoint {checkpoint_id}")
        return True

    async def prune_checkpoints(self, execution_id: str, max_age_days: int = 7) -> int:
        """
        Delete checkpoints created more than max_age_days ago.

        Returns:
            Number of checkpoints deleted
        """
        index = await self.load_index(execution_id)
        if index is None:
            return 0

        cutoff = datetime.now() - timedelta(days=max_age_days)
        expired = []
        for summary in index.checkpoints:
            try:
                created = datetime.fromisoformat(summary.created_at)
            except ValueError:
                logger.warning(f"Bad timestamp on {summary.checkpoint_id}: {summary.created_at}")
                continue
            if created < cutoff:
                expired.append(summary.checkpoint_id)

        deleted = 0
        for checkpoint_id in expired:
            if await self.delete_checkpoint(execution_id, checkpoint_id):
                deleted += 1

        if deleted:
            logger.info(f"Pruned {deleted} checkpoint(s) older than {max_age_days} days")
        return deleted
