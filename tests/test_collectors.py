"""Collector Runner Tests.

Collectors are small Python scripts written to tmp_path and run with the
current interpreter.
"""

import asyncio
import textwrap

import pytest

from conductor_collectors.runner import CollectorRunner, collector_command, inspect_collector_file
from conductor_collectors.schemas import CollectorRunOptions
from conductor_core.cancellation import CancellationToken
from conductor_core.exceptions import NotFoundError, OperationCancelledError, ValidationError

ECHO_COLLECTOR = '''
import json
import os
import sys

INPUT_SCHEMA = {
    "type": "object",
    "properties": {"city": {"type": "string"}, "days": {"type": "number", "default": 3}},
    "required": ["city"],
}
OUTPUT_SCHEMA = {"type": "object", "properties": {"city": {"type": "string"}}}
VERSION = "2.0.0"

payload = json.load(sys.stdin)
if "MARKER" in os.environ:
    open(os.environ["MARKER"], "w").close()
print(json.dumps({
    "city": payload["input"].get("city"),
    "execution_id": payload["context"]["execution_id"],
    "region": os.environ.get("REGION"),
}))
'''


def write_collector(tmp_path, name: str, body: str):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


@pytest.fixture
def runner(session_factory, settings):
    return CollectorRunner(session_factory, settings)


@pytest.fixture
async def echo(runner, tmp_path):
    path = write_collector(tmp_path, "echo.py", ECHO_COLLECTOR)
    return await runner.register_collector(str(path), "echo", environment={"REGION": "eu"})


class TestInspection:
    """Tests for static file inspection."""

    def test_python_metadata(self, tmp_path):
        path = write_collector(tmp_path, "echo.py", ECHO_COLLECTOR)

        inspection = inspect_collector_file(path)

        assert inspection.valid
        assert inspection.type == "python"
        assert inspection.has_input_schema and inspection.has_output_schema
        assert inspection.input_schema["required"] == ["city"]
        assert inspection.version == "2.0.0"

    def test_node_metadata(self, tmp_path):
        path = write_collector(
            tmp_path,
            "collect.js",
            'export const inputSchema = {"type": "object", "properties": {}};\n'
            'export const version = "0.4.1";\n',
        )

        inspection = inspect_collector_file(path)

        assert inspection.type == "node"
        assert inspection.has_input_schema
        assert not inspection.has_output_schema
        assert inspection.version == "0.4.1"

    def test_schema_defaults_when_undeclared(self, tmp_path):
        path = write_collector(tmp_path, "bare.py", "print('{}')\n")

        inspection = inspect_collector_file(path)

        assert inspection.valid
        assert inspection.input_schema["type"] == "object"
        assert "No input schema detected" in inspection.warnings

    def test_non_executable_binary(self, tmp_path):
        path = tmp_path / "collector"
        path.write_text("#!/bin/sh\necho '{}'\n")
        path.chmod(0o644)

        inspection = inspect_collector_file(path)

        assert not inspection.valid
        assert inspection.errors == ["File is not executable"]

    def test_missing_file(self, tmp_path):
        assert not inspect_collector_file(tmp_path / "nope.py").valid

    def test_command_by_extension(self):
        assert collector_command("/x/run.js") == ["node", "/x/run.js"]
        assert collector_command("/x/run.sh") == ["bash", "/x/run.sh"]
        assert collector_command("/x/run") == ["/x/run"]
        assert collector_command("/x/run.py")[1] == "/x/run.py"


class TestRegistry:
    """Tests for registration and lookup."""

    @pytest.mark.asyncio
    async def test_register_extracts_metadata(self, echo, tmp_path, settings):
        assert echo.name == "echo"
        assert echo.version == "2.0.0"
        assert echo.input_schema["required"] == ["city"]
        assert echo.timeout == settings.COLLECTOR_DEFAULT_TIMEOUT
        assert echo.file_path == str((tmp_path / "echo.py").resolve())

    @pytest.mark.asyncio
    async def test_register_missing_file(self, runner, tmp_path):
        with pytest.raises(ValidationError):
            await runner.register_collector(str(tmp_path / "missing.py"), "missing")

    @pytest.mark.asyncio
    async def test_register_duplicate_name(self, runner, echo, tmp_path):
        other = write_collector(tmp_path, "other.py", "print('{}')\n")
        with pytest.raises(ValidationError):
            await runner.register_collector(str(other), "echo")

    @pytest.mark.asyncio
    async def test_lookup_enable_remove(self, runner, echo):
        assert (await runner.get_collector("echo")).id == echo.id
        assert (await runner.get_collector(echo.id)).name == "echo"

        assert await runner.set_collector_enabled("echo", False)
        assert await runner.list_collectors(enabled_only=True) == []
        assert len(await runner.list_collectors()) == 1

        assert await runner.remove_collector(echo.id)
        assert await runner.get_collector("echo") is None
        assert not await runner.remove_collector(echo.id)
        assert not await runner.set_collector_enabled("echo", True)


class TestExecution:
    """Tests for running collector processes."""

    @pytest.mark.asyncio
    async def test_success(self, runner, echo):
        result = await runner.execute_collector(
            "echo", {"city": "Oslo"}, CollectorRunOptions(execution_id="exec-1")
        )

        assert result.status == "success"
        assert result.exit_code == 0
        assert result.output == {"city": "Oslo", "execution_id": "exec-1", "region": "eu"}

        collector = await runner.get_collector("echo")
        assert collector.execution_count == 1
        assert collector.last_executed is not None

    @pytest.mark.asyncio
    async def test_option_environment_overrides(self, runner, echo):
        result = await runner.execute_collector(
            "echo", {"city": "Oslo"}, CollectorRunOptions(environment={"REGION": "us"})
        )
        assert result.output["region"] == "us"

    @pytest.mark.asyncio
    async def test_invalid_input_does_not_spawn(self, runner, echo, tmp_path):
        marker = tmp_path / "spawned"
        result = await runner.execute_collector(
            "echo",
            {"days": "three"},
            CollectorRunOptions(environment={"MARKER": str(marker)}),
        )

        assert result.status == "error"
        assert "Missing required parameter: city" in result.error
        assert "should be a number" in result.error
        assert not marker.exists()
        assert (await runner.get_collector("echo")).execution_count == 0

    @pytest.mark.asyncio
    async def test_output_validation(self, runner, tmp_path):
        path = write_collector(
            tmp_path,
            "typed.py",
            '''
            import json
            OUTPUT_SCHEMA = {"type": "object", "properties": {"count": {"type": "number"}}}
            print(json.dumps({"count": "many"}))
            ''',
        )
        await runner.register_collector(str(path), "typed")

        lenient = await runner.execute_collector("typed")
        strict = await runner.execute_collector("typed", options=CollectorRunOptions(validate_output=True))

        assert lenient.status == "success"
        assert strict.status == "error"
        assert "Output validation failed" in strict.error

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, runner, tmp_path):
        path = write_collector(
            tmp_path,
            "fail.py",
            '''
            import sys
            sys.stderr.write("upstream unavailable")
            sys.exit(3)
            ''',
        )
        await runner.register_collector(str(path), "fail")

        result = await runner.execute_collector("fail")

        assert result.status == "error"
        assert result.exit_code == 3
        assert result.error == "upstream unavailable"

    @pytest.mark.asyncio
    async def test_non_object_output(self, runner, tmp_path):
        path = write_collector(tmp_path, "text.py", "print('hello')\n")
        await runner.register_collector(str(path), "text")

        result = await runner.execute_collector("text")

        assert result.status == "error"
        assert "not a JSON object" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self, runner, tmp_path):
        path = write_collector(tmp_path, "slow.py", "import time\ntime.sleep(30)\n")
        await runner.register_collector(str(path), "slow", timeout=1)

        result = await runner.execute_collector("slow")

        assert result.status == "timeout"
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_cancellation_raises_and_counts_run(self, runner, tmp_path):
        path = write_collector(tmp_path, "slow.py", "import time\ntime.sleep(30)\n")
        await runner.register_collector(str(path), "slow")
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel)

        with pytest.raises(OperationCancelledError):
            await runner.execute_collector("slow", cancel_token=token)

        collector = await runner.get_collector("slow")
        assert collector.execution_count == 1
        assert collector.last_executed is not None
        assert collector.total_execution_ms >= 100

    @pytest.mark.asyncio
    async def test_disabled(self, runner, echo):
        await runner.set_collector_enabled("echo", False)

        result = await runner.execute_collector("echo", {"city": "Oslo"})

        assert result.status == "error"
        assert "disabled" in result.error

    @pytest.mark.asyncio
    async def test_file_removed_after_registration(self, runner, echo, tmp_path):
        (tmp_path / "echo.py").unlink()

        result = await runner.execute_collector("echo", {"city": "Oslo"})

        assert result.status == "error"
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_unknown_collector(self, runner):
        with pytest.raises(NotFoundError):
            await runner.execute_collector("ghost")

    @pytest.mark.asyncio
    async def test_smoke_test_uses_sample_input(self, runner, echo):
        result = await runner.test_collector("echo")

        assert result.status == "success"
        assert result.output["city"] == "sample-string"

    @pytest.mark.asyncio
    async def test_stats(self, runner, echo, tmp_path):
        idle = write_collector(tmp_path, "idle.py", "print('{}')\n")
        await runner.register_collector(str(idle), "idle")
        await runner.set_collector_enabled("idle", False)
        await runner.execute_collector("echo", {"city": "a"})
        await runner.execute_collector("echo", {"city": "b"})

        stats = await runner.get_collector_stats()

        assert stats.total_collectors == 2
        assert stats.enabled_collectors == 1
        assert stats.disabled_collectors == 1
        assert stats.total_executions == 2
        assert [u.name for u in stats.most_used] == ["echo"]
        assert stats.most_used[0].execution_count == 2
