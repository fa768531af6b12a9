"""Tests for the entity stores."""

from datetime import datetime, timedelta

import pytest

from appflow.schemas.app import AgentApp, FlowNode
from appflow.schemas.execution import AgentAppExecution, ExecutionStatus
from appflow.storage import FileEntityStore, InMemoryEntityStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryEntityStore()
    return FileEntityStore(tmp_path / "store")


def _app(name: str = "demo") -> AgentApp:
    return AgentApp(
        name=name,
        flow_definition=[
            FlowNode(id="start", type="start", outputs=["a"]),
            FlowNode(id="a", type="agent", inputs=["start"], config={"agent_id": "x"}),
        ],
    )


class TestApps:
    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        app = _app()
        await store.save_app(app)

        loaded = await store.get_app(app.id)

        assert loaded == app
        assert loaded.flow_definition[1].config == {"agent_id": "x"}

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_app("app_missing") is None

    @pytest.mark.asyncio
    async def test_list_and_delete(self, store):
        first, second = _app("one"), _app("two")
        await store.save_app(first)
        await store.save_app(second)

        assert {a.id for a in await store.list_apps()} == {first.id, second.id}
        assert await store.delete_app(first.id) is True
        assert await store.delete_app(first.id) is False
        assert [a.id for a in await store.list_apps()] == [second.id]

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        app = _app()
        await store.save_app(app)

        loaded = await store.get_app(app.id)
        loaded.execution_count = 99
        app.name = "changed"

        again = await store.get_app(app.id)
        assert again.execution_count == 0
        assert again.name == "demo"


class TestExecutions:
    @pytest.mark.asyncio
    async def test_round_trip_preserves_status_fields(self, store):
        execution = AgentAppExecution(app_id="app_1", input={"q": 1})
        execution.mark_running()
        execution.mark_completed({"answer": 42}, ["start", "a"], {"b": "boom"})
        await store.save_execution(execution)

        loaded = await store.get_execution(execution.id)

        assert loaded.status == ExecutionStatus.COMPLETED
        assert loaded.output == {"answer": 42}
        assert loaded.execution_path == ["start", "a"]
        assert loaded.node_errors == {"b": "boom"}
        assert loaded.duration == execution.duration

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filter_and_limit(self, store):
        base = datetime(2026, 1, 1, 12, 0, 0)
        for i, app_id in enumerate(["app_1", "app_2", "app_1", "app_1"]):
            await store.save_execution(
                AgentAppExecution(id=f"exec_{i}", app_id=app_id, started_at=base + timedelta(i))
            )

        assert [e.id for e in await store.list_executions()] == [
            "exec_3",
            "exec_2",
            "exec_1",
            "exec_0",
        ]
        assert [e.id for e in await store.list_executions(app_id="app_1")] == [
            "exec_3",
            "exec_2",
            "exec_0",
        ]
        assert [e.id for e in await store.list_executions(app_id="app_1", limit=1)] == ["exec_3"]

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_execution("exec_missing") is None


class TestFileStore:
    @pytest.mark.asyncio
    async def test_layout(self, tmp_path):
        store = FileEntityStore(tmp_path)
        app = _app()
        execution = AgentAppExecution(app_id=app.id)

        await store.save_app(app)
        await store.save_execution(execution)

        assert (tmp_path / "apps" / f"{app.id}.json").exists()
        assert (tmp_path / "executions" / f"{execution.id}.json").exists()
        assert not list(tmp_path.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_unreadable_files_are_skipped(self, tmp_path):
        store = FileEntityStore(tmp_path)
        app = _app()
        await store.save_app(app)
        (tmp_path / "apps" / "broken.json").write_text("{not json", encoding="utf-8")
        (tmp_path / "executions").mkdir()
        (tmp_path / "executions" / "broken.json").write_text("[]", encoding="utf-8")

        assert [a.id for a in await store.list_apps()] == [app.id]
        assert await store.list_executions() == []

    @pytest.mark.asyncio
    async def test_empty_directory(self, tmp_path):
        store = FileEntityStore(tmp_path / "nothing-here")

        assert await store.list_apps() == []
        assert await store.list_executions() == []
        assert await store.delete_app("app_x") is False
