"""Query Execution Engine Tests."""

import asyncio
import json

import httpx
import pytest
from sqlalchemy import update

from conductor_collectors.runner import CollectorRunner
from conductor_core.exceptions import NotFoundError, ValidationError
from conductor_memory.models import Execution, Tool, utcnow
from conductor_query.engine import QueryExecutionEngine
from conductor_query.schemas import ExecutionOptions, QueryFilters, QueryUpdate
from conductor_tools.client import ProtocolClient
from tests.conftest import mock_client, rpc_result

PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "limit": {"type": "number"}},
    "required": ["path"],
}


class Remote:
    """Tool endpoint stub recording every JSON-RPC request."""

    def __init__(self, result=None, delay: float = 0.0, status_code: int = 200):
        self.result = {"files": ["a.txt"]} if result is None else result
        self.delay = delay
        self.status_code = status_code
        self.bodies: list[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_code != 200:
            return httpx.Response(self.status_code)
        return rpc_result(request, self.result)


@pytest.fixture
async def engine_for(session_factory, settings, credential_store):
    """Build a QueryExecutionEngine whose protocol client talks to `remote`."""
    clients = []

    def _build(remote: Remote) -> QueryExecutionEngine:
        http = mock_client(remote)
        clients.append(http)
        protocol = ProtocolClient(credential_store, settings, http_client=http)
        collectors = CollectorRunner(session_factory, settings)
        return QueryExecutionEngine(session_factory, protocol, collectors, settings)

    yield _build
    for http in clients:
        await http.aclose()


@pytest.fixture
async def tool(make_tool):
    return await make_tool(name="files", auth_required=False)


@pytest.fixture
def query_data(tool):
    return {
        "name": "list-files",
        "description": "List files under a path",
        "tool_id": tool.id,
        "parameters": PATH_SCHEMA,
        "operation": {"method": "call_tool", "params": {"name": "list"}},
    }


class TestQueryLifecycle:
    """Tests for create/get/list/update/delete."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, engine_for, query_data):
        engine = engine_for(Remote())

        query = await engine.create_query(query_data)

        assert query.execution_count == 0
        assert (await engine.get_query("list-files")).id == query.id
        assert (await engine.get_query(query.id)).operation["method"] == "call_tool"
        assert await engine.get_query("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_name(self, engine_for, query_data):
        engine = engine_for(Remote())
        await engine.create_query(query_data)

        with pytest.raises(ValidationError):
            await engine.create_query(query_data)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation",
        [{}, {"method": ""}, {"method": "call_tool", "params": ["x"]}],
    )
    async def test_invalid_operation(self, engine_for, query_data, operation):
        engine = engine_for(Remote())

        with pytest.raises(ValidationError) as exc_info:
            await engine.create_query({**query_data, "operation": operation})
        assert exc_info.value.errors

    @pytest.mark.asyncio
    async def test_tool_must_exist_and_be_active(self, engine_for, query_data, make_tool):
        engine = engine_for(Remote())
        retired = await make_tool(name="retired", status="deprecated")

        with pytest.raises(NotFoundError):
            await engine.create_query({**query_data, "tool_id": "missing"})
        with pytest.raises(ValidationError):
            await engine.create_query({**query_data, "tool_id": retired.id})

    @pytest.mark.asyncio
    async def test_update(self, engine_for, query_data):
        engine = engine_for(Remote())
        query = await engine.create_query(query_data)
        await engine.create_query({**query_data, "name": "other"})

        updated = await engine.update_query(query.id, QueryUpdate(description="new", timeout=5))

        assert updated.description == "new"
        assert updated.timeout == 5
        assert updated.name == "list-files"
        with pytest.raises(ValidationError):
            await engine.update_query(query.id, {"name": "other"})
        with pytest.raises(NotFoundError):
            await engine.update_query("missing", {"description": "x"})

    @pytest.mark.asyncio
    async def test_list_with_filters(self, engine_for, query_data, make_tool):
        engine = engine_for(Remote())
        other_tool = await make_tool(name="other-tool", auth_required=False)
        await engine.create_query(query_data)
        await engine.create_query(
            {
                **query_data,
                "name": "search-notes",
                "description": "Search notes",
                "tool_id": other_tool.id,
            }
        )

        by_tool = await engine.list_queries(QueryFilters(tool_id=other_tool.id))
        by_search = await engine.list_queries(QueryFilters(search="files"))
        paged = await engine.list_queries(limit=1)

        assert [q.name for q in by_tool.queries] == ["search-notes"]
        assert [q.name for q in by_search.queries] == ["list-files"]
        assert paged.total == 2 and paged.has_more
        assert (await engine.list_queries(QueryFilters(has_been_executed=True))).total == 0

    @pytest.mark.asyncio
    async def test_delete_removes_executions(self, engine_for, query_data):
        engine = engine_for(Remote())
        query = await engine.create_query(query_data)
        result = await engine.execute_query(query.id, {"path": "/"})

        assert await engine.delete_query(query.id)
        assert await engine.get_query(query.id) is None
        assert await engine.get_execution(result.execution_id) is None
        assert not await engine.delete_query(query.id)


class TestExecuteQuery:
    """Tests for execute_query outcomes and persistence."""

    @pytest.mark.asyncio
    async def test_success(self, engine_for, query_data):
        remote = Remote()
        engine = engine_for(remote)
        query = await engine.create_query(query_data)

        result = await engine.execute_query(query.id, {"path": "/tmp", "limit": 10})

        assert result.status == "completed"
        assert result.result == {"files": ["a.txt"]}
        assert result.parameter_validation.valid
        assert remote.bodies[0]["method"] == "call_tool"
        assert remote.bodies[0]["params"] == {"name": "list", "path": "/tmp", "limit": 10}

        execution = await engine.get_execution(result.execution_id)
        assert execution.status == "completed"
        assert execution.completed_at is not None
        assert execution.result == {"files": ["a.txt"]}

        refreshed = await engine.get_query(query.id)
        assert refreshed.execution_count == 1
        assert refreshed.last_executed is not None
        assert engine.active_executions() == []

    @pytest.mark.asyncio
    async def test_credential_refs_recorded(
        self, engine_for, query_data, make_tool, credential_store
    ):
        secured = await make_tool(name="secured", auth_required=True)
        credential = await credential_store.store(secured.id, "bearer", {"token": "t"})
        engine = engine_for(Remote())
        query = await engine.create_query({**query_data, "tool_id": secured.id})

        result = await engine.execute_query(query.id, {"path": "/"})

        assert result.credential_id == credential.id
        execution = await engine.get_execution(result.execution_id)
        assert execution.credential_refs == [credential.id]

    @pytest.mark.asyncio
    async def test_missing_required_parameter(self, engine_for, query_data):
        """Invalid parameters fail fast: no remote call, no execution row."""
        remote = Remote()
        engine = engine_for(remote)
        query = await engine.create_query(query_data)

        result = await engine.execute_query(query.id, {})

        assert result.status == "failed"
        assert "path" in result.error
        assert result.parameter_validation.errors == ["Missing required parameter: path"]
        assert remote.bodies == []
        assert (await engine.get_execution_history(query.id)).total == 0

    @pytest.mark.asyncio
    async def test_validation_skipped_when_output_validation_off(self, engine_for, query_data):
        remote = Remote()
        engine = engine_for(remote)
        query = await engine.create_query(query_data)

        result = await engine.execute_query(
            query.id, {"limit": "ten"}, options=ExecutionOptions(validate_output=False)
        )

        assert result.status == "completed"
        assert not result.parameter_validation.valid
        assert len(remote.bodies) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, engine_for, query_data):
        """A slow remote is interrupted at the deadline and marked timeout."""
        engine = engine_for(Remote(delay=2.0))
        query = await engine.create_query(query_data)

        result = await engine.execute_query(
            query.id, {"path": "/"}, options=ExecutionOptions(timeout=0.2)
        )

        assert result.status == "timeout"
        assert "timed out" in result.error
        assert result.execution_time_ms < 2000
        assert engine.active_executions() == []
        execution = await engine.get_execution(result.execution_id)
        assert execution.status == "timeout"
        assert execution.completed_at is not None
        assert (await engine.get_query(query.id)).execution_count == 0

    @pytest.mark.asyncio
    async def test_cancel_execution(self, engine_for, query_data):
        engine = engine_for(Remote(delay=2.0))
        query = await engine.create_query(query_data)

        task = asyncio.create_task(engine.execute_query(query.id, {"path": "/"}))
        while not engine.active_executions():
            await asyncio.sleep(0.01)
        execution_id = engine.active_executions()[0]

        assert await engine.cancel_execution(execution_id) is True
        result = await task

        assert result.status == "cancelled"
        assert (await engine.get_execution(execution_id)).status == "cancelled"
        assert await engine.cancel_execution(execution_id) is False

    @pytest.mark.asyncio
    async def test_cancel_while_finishing_is_refused(self, engine_for, query_data):
        """Once the remote call returned, a late cancel cannot contradict the result."""
        engine = engine_for(Remote())
        finishing: asyncio.Queue[str] = asyncio.Queue()
        original_finish = engine._finish

        async def slow_finish(execution_id, *args, **kwargs):
            finishing.put_nowait(execution_id)
            await asyncio.sleep(0.2)
            return await original_finish(execution_id, *args, **kwargs)

        engine._finish = slow_finish
        query = await engine.create_query(query_data)

        task = asyncio.create_task(engine.execute_query(query.id, {"path": "/"}))
        execution_id = await finishing.get()

        assert await engine.cancel_execution(execution_id) is False
        result = await task

        assert result.status == "completed"
        assert (await engine.get_execution(execution_id)).status == "completed"
        assert (await engine.get_query(query.id)).execution_count == 1

    @pytest.mark.asyncio
    async def test_terminal_row_written_first_wins(self, engine_for, query_data, session_factory):
        """If the row is already terminal, the result reports the stored status."""
        engine = engine_for(Remote())
        original_finish = engine._finish

        async def finish_after_cancel(execution_id, *args, **kwargs):
            async with session_factory.begin() as session:
                await session.execute(
                    update(Execution)
                    .where(Execution.id == execution_id)
                    .values(
                        status="cancelled",
                        completed_at=utcnow(),
                        error_details={"error": "Execution cancelled"},
                    )
                )
            return await original_finish(execution_id, *args, **kwargs)

        engine._finish = finish_after_cancel
        query = await engine.create_query(query_data)

        result = await engine.execute_query(query.id, {"path": "/"})

        assert result.status == "cancelled"
        assert result.result is None
        assert result.error == "Execution cancelled"
        assert (await engine.get_execution(result.execution_id)).status == "cancelled"
        assert (await engine.get_query(query.id)).execution_count == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, engine_for):
        engine = engine_for(Remote())
        assert await engine.cancel_execution("no-such-execution") is False

    @pytest.mark.asyncio
    async def test_remote_failure(self, engine_for, query_data):
        engine = engine_for(Remote(status_code=500))
        query = await engine.create_query(query_data)

        result = await engine.execute_query(query.id, {"path": "/"})

        assert result.status == "failed"
        assert "500" in result.error
        execution = await engine.get_execution(result.execution_id)
        assert execution.error_details == {"error": result.error}
        assert (await engine.get_query(query.id)).execution_count == 0

    @pytest.mark.asyncio
    async def test_tool_deactivated_after_creation(
        self, engine_for, query_data, session_factory, tool
    ):
        remote = Remote()
        engine = engine_for(remote)
        query = await engine.create_query(query_data)
        async with session_factory.begin() as session:
            await session.execute(update(Tool).where(Tool.id == tool.id).values(status="inactive"))

        result = await engine.execute_query(query.id, {"path": "/"})

        assert result.status == "failed"
        assert remote.bodies == []

    @pytest.mark.asyncio
    async def test_unknown_query(self, engine_for):
        engine = engine_for(Remote())
        with pytest.raises(NotFoundError):
            await engine.execute_query("missing")

    @pytest.mark.asyncio
    async def test_not_saved(self, engine_for, query_data):
        engine = engine_for(Remote())
        query = await engine.create_query(query_data)

        result = await engine.execute_query(
            query.id, {"path": "/"}, options=ExecutionOptions(save_execution=False)
        )

        assert result.status == "completed"
        assert await engine.get_execution(result.execution_id) is None
        assert (await engine.get_query(query.id)).execution_count == 1


class TestCollectorInputs:
    """Tests for collector data forwarded to the remote call."""

    COLLECTOR = (
        "import json, sys\n"
        "payload = json.load(sys.stdin)\n"
        "print(json.dumps({'forecast': 'rain', 'city': payload['input']['city']}))\n"
    )

    @pytest.mark.asyncio
    async def test_collectors_run_and_forwarded(self, engine_for, query_data, tmp_path):
        remote = Remote()
        engine = engine_for(remote)
        script = tmp_path / "weather.py"
        script.write_text(self.COLLECTOR)
        await engine.collector_runner.register_collector(str(script), "weather")
        query = await engine.create_query(query_data)

        result = await engine.execute_query(
            query.id,
            {"path": "/"},
            collector_inputs={"manual": {"note": "given"}},
            options=ExecutionOptions(collectors={"weather": {"city": "Oslo"}}),
        )

        assert result.status == "completed"
        forwarded = remote.bodies[0]["params"]["collector_inputs"]
        assert forwarded == {
            "manual": {"note": "given"},
            "weather": {"forecast": "rain", "city": "Oslo"},
        }
        execution = await engine.get_execution(result.execution_id)
        assert execution.collector_inputs == forwarded

    @pytest.mark.asyncio
    async def test_collector_failure_fails_execution(self, engine_for, query_data, tmp_path):
        remote = Remote()
        engine = engine_for(remote)
        script = tmp_path / "broken.py"
        script.write_text("import sys\nsys.exit(1)\n")
        await engine.collector_runner.register_collector(str(script), "broken")
        query = await engine.create_query(query_data)

        result = await engine.execute_query(
            query.id, {"path": "/"}, options=ExecutionOptions(collectors={"broken": {}})
        )

        assert result.status == "failed"
        assert "broken" in result.error
        assert remote.bodies == []


class TestReadModels:
    """Tests for history and statistics."""

    @pytest.mark.asyncio
    async def test_history_and_stats(self, engine_for, query_data):
        engine = engine_for(Remote())
        query = await engine.create_query(query_data)
        await engine.execute_query(query.id, {"path": "/a"})
        await engine.execute_query(query.id, {"path": "/b"})
        engine.protocol_client.client = mock_client(Remote(status_code=400))
        await engine.execute_query(query.id, {"path": "/c"})
        await engine.protocol_client.client.aclose()

        history = await engine.get_execution_history(query.id)
        completed = await engine.get_execution_history(query.id, status="completed")
        page = await engine.get_execution_history(query.id, limit=2)
        stats = await engine.get_query_stats()

        assert history.total == 3
        assert completed.total == 2
        assert page.has_more
        assert stats.total_queries == 1
        assert stats.total_executions == 3
        assert stats.successful_executions == 2
        assert stats.failed_executions == 1
        assert stats.average_execution_time_ms >= 0
        assert stats.top_queries[0].execution_count == 2
        assert (await engine.get_query_stats(query.id)).total_executions == 3
