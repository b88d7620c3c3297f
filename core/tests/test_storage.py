"""Tests for checkpoint schemas and the in-memory / file checkpoint stores."""

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from flowforge.schemas.checkpoint import Checkpoint, CheckpointIndex
from flowforge.storage.checkpoint_store import FileCheckpointStore, InMemoryCheckpointStore

# === HELPER FUNCTIONS ===


def make_checkpoint(
    execution_id: str = "exec_1",
    node_id: str | None = "a",
    completed: list[str] | None = None,
) -> Checkpoint:
    return Checkpoint.create(
        execution_id=execution_id,
        node_id=node_id,
        variables={"a_output": {"ok": True}},
        completed_nodes=completed or ["a"],
        retried_nodes={"a": 2},
    )


class TestCheckpointSchema:
    def test_create_fills_identity(self):
        cp = make_checkpoint()

        assert cp.checkpoint_id.startswith("cp_a_")
        assert cp.execution_id == "exec_1"
        assert cp.retry_attempt == 2
        datetime.fromisoformat(cp.created_at)

    def test_create_copies_variables(self):
        variables = {"x": 1}
        cp = Checkpoint.create(execution_id="e", node_id=None, variables=variables)
        variables["x"] = 2

        assert cp.variables == {"x": 1}
        assert cp.checkpoint_id.startswith("cp_start_")

    def test_unsafe_node_id_sanitized(self):
        cp = make_checkpoint(node_id="../evil node")
        assert "/" not in cp.checkpoint_id
        assert " " not in cp.checkpoint_id

    def test_index_add_and_remove(self):
        index = CheckpointIndex(execution_id="exec_1")
        first, second = make_checkpoint(), make_checkpoint(node_id="b", completed=["a", "b"])

        index.add_checkpoint(first)
        index.add_checkpoint(second)
        assert index.latest_checkpoint_id == second.checkpoint_id
        assert index.get_checkpoint_summary(second.checkpoint_id).completed_count == 2
        assert len(index.filter_by_node("a")) == 1

        index.remove_checkpoint(second.checkpoint_id)
        assert index.latest_checkpoint_id == first.checkpoint_id
        assert index.total_checkpoints == 1


class TestInMemoryCheckpointStore:
    @pytest.mark.asyncio
    async def test_persist_and_latest(self):
        store = InMemoryCheckpointStore()
        first, second = make_checkpoint(), make_checkpoint(node_id="b")

        assert await store.persist(first) is True
        assert await store.persist(second) is True

        assert [c.checkpoint_id for c in await store.list_checkpoints("exec_1")] == [
            first.checkpoint_id,
            second.checkpoint_id,
        ]
        assert (await store.latest("exec_1")).checkpoint_id == second.checkpoint_id
        assert await store.latest("other") is None

    @pytest.mark.asyncio
    async def test_bounded_per_execution(self):
        store = InMemoryCheckpointStore(max_per_execution=2)
        for node in ("a", "b", "c"):
            await store.persist(make_checkpoint(node_id=node))

        assert [c.node_id for c in await store.list_checkpoints("exec_1")] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_clear(self):
        store = InMemoryCheckpointStore()
        await store.persist(make_checkpoint())
        store.clear("exec_1")

        assert await store.list_checkpoints("exec_1") == []

    @pytest.mark.asyncio
    async def test_discard_releases_execution(self):
        store = InMemoryCheckpointStore()
        await store.persist(make_checkpoint())
        await store.persist(make_checkpoint(execution_id="exec_2"))

        store.discard("exec_1")

        assert await store.list_checkpoints("exec_1") == []
        assert len(await store.list_checkpoints("exec_2")) == 1

    @pytest.mark.asyncio
    async def test_persist_failure_swallowed(self):
        """A failing write is logged and reported, never raised."""

        class BrokenStore(InMemoryCheckpointStore):
            async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
                raise OSError("disk full")

        assert await BrokenStore().persist(make_checkpoint()) is False


class TestFileCheckpointStore:
    @pytest.mark.asyncio
    async def test_save_writes_file_and_index(self, tmp_path: Path):
        store = FileCheckpointStore(tmp_path)
        cp = make_checkpoint()

        assert await store.persist(cp) is True

        cp_path = tmp_path / "exec_1" / f"{cp.checkpoint_id}.json"
        assert cp_path.exists()
        index = json.loads((tmp_path / "exec_1" / "index.json").read_text())
        assert index["latest_checkpoint_id"] == cp.checkpoint_id

    @pytest.mark.asyncio
    async def test_load_latest_and_by_id(self, tmp_path: Path):
        store = FileCheckpointStore(str(tmp_path))
        first, second = make_checkpoint(), make_checkpoint(node_id="b", completed=["a", "b"])
        await store.save_checkpoint(first)
        await store.save_checkpoint(second)

        latest = await store.latest("exec_1")
        assert latest.checkpoint_id == second.checkpoint_id
        assert latest.completed_nodes == ["a", "b"]

        loaded = await store.load_checkpoint("exec_1", first.checkpoint_id)
        assert loaded.variables == {"a_output": {"ok": True}}
        assert len(await store.list_checkpoints("exec_1")) == 2

    @pytest.mark.asyncio
    async def test_missing_execution(self, tmp_path: Path):
        store = FileCheckpointStore(tmp_path)

        assert await store.latest("exec_none") is None
        assert await store.list_checkpoints("exec_none") == []

    @pytest.mark.asyncio
    async def test_delete_checkpoint(self, tmp_path: Path):
        store = FileCheckpointStore(tmp_path)
        first, second = make_checkpoint(), make_checkpoint(node_id="b")
        await store.save_checkpoint(first)
        await store.save_checkpoint(second)

        assert await store.delete_checkpoint("exec_1", second.checkpoint_id) is True
        assert await store.delete_checkpoint("exec_1", second.checkpoint_id) is False
        assert (await store.latest("exec_1")).checkpoint_id == first.checkpoint_id

    @pytest.mark.asyncio
    async def test_prune_old_checkpoints(self, tmp_path: Path):
        store = FileCheckpointStore(tmp_path)
        old = make_checkpoint()
        old.created_at = (datetime.now() - timedelta(days=10)).isoformat()
        fresh = make_checkpoint(node_id="b")
        await store.save_checkpoint(old)
        await store.save_checkpoint(fresh)

        assert await store.prune_checkpoints("exec_1", max_age_days=7) == 1
        assert [c.checkpoint_id for c in await store.list_checkpoints("exec_1")] == [
            fresh.checkpoint_id
        ]

    @pytest.mark.asyncio
    async def test_discard_keeps_files(self, tmp_path: Path):
        store = FileCheckpointStore(tmp_path)
        cp = make_checkpoint()
        await store.save_checkpoint(cp)

        store.discard("exec_1")

        assert (await store.latest("exec_1")).checkpoint_id == cp.checkpoint_id

    @pytest.mark.asyncio
    async def test_rejects_path_escape(self, tmp_path: Path):
        store = FileCheckpointStore(tmp_path / "cps")
        cp = make_checkpoint(execution_id="../outside")

        assert await store.persist(cp) is False
        assert not (tmp_path / "outside").exists()
