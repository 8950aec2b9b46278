"""Collector Runner.

Runs registered external programs that produce query input. The program gets
`{"input": ..., "context": ...}` as JSON on stdin and must print one JSON
object on stdout.
"""

import ast
import asyncio
import json
import os
import re
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from sqlalchemy import delete, func, or_, select, update

from conductor_collectors.schemas import (
    CollectorInfo,
    CollectorRunOptions,
    CollectorRunResult,
    CollectorStats,
    CollectorUsage,
    FileInspection,
)
from conductor_config.settings import Settings
from conductor_core.cancellation import CancellationToken, run_cancellable
from conductor_core.exceptions import NotFoundError, OperationCancelledError, ValidationError
from conductor_core.validation import sample_from_schema, validate_parameters
from conductor_memory.models import Collector, utcnow
from conductor_obs.logging import get_logger
from conductor_obs.metrics import collector_run_duration, collector_runs_total
from conductor_obs.tracing import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

EXTENSION_TYPES = {
    ".py": "python",
    ".js": "node",
    ".mjs": "node",
    ".sh": "shell",
    ".bash": "shell",
}

PYTHON_METADATA = ("INPUT_SCHEMA", "OUTPUT_SCHEMA", "VERSION")

NODE_EXPORT = r"(?:export\s+const\s+{name}|exports\.{name})\s*=\s*"


def collector_command(path: str) -> list[str]:
    """argv for running a collector, chosen by file extension."""
    kind = EXTENSION_TYPES.get(Path(path).suffix.lower(), "executable")
    if kind == "python":
        return [sys.executable, path]
    if kind == "node":
        return ["node", path]
    if kind == "shell":
        return ["bash", path]
    return [path]


def _python_metadata(source: str) -> dict[str, Any]:
    """Read module-level INPUT_SCHEMA/OUTPUT_SCHEMA/VERSION literals."""
    found = {}
    for node in ast.parse(source).body:
        if not isinstance(node, ast.Assign):
            continue
        for target in node.targets:
            if isinstance(target, ast.Name) and target.id in PYTHON_METADATA:
                found[target.id] = ast.literal_eval(node.value)
    return found


def _node_metadata(source: str) -> dict[str, Any]:
    found = {}
    for key, name in (("INPUT_SCHEMA", "inputSchema"), ("OUTPUT_SCHEMA", "outputSchema")):
        match = re.search(NODE_EXPORT.format(name=name) + r"(\{[\s\S]*?\});", source)
        if match:
            found[key] = json.loads(match.group(1))
    match = re.search(NODE_EXPORT.format(name="version") + r"['\"]([^'\"]+)['\"]", source)
    if match:
        found["VERSION"] = match.group(1)
    return found


def inspect_collector_file(path: str | Path) -> FileInspection:
    """Static validation of a collector program.

    Detects the collector type, checks it can be run, and extracts declared
    schemas without executing the file.
    """
    path = Path(path)
    if not path.exists():
        return FileInspection(valid=False, errors=[f"Collector file not found: {path}"])
    if not path.is_file():
        return FileInspection(valid=False, errors=["Path is not a file"])

    kind = EXTENSION_TYPES.get(path.suffix.lower(), "executable")
    inspection = FileInspection(valid=True, type=kind)

    if kind == "executable":
        if not os.access(path, os.X_OK):
            inspection.errors.append("File is not executable")
        inspection.valid = not inspection.errors
        return inspection

    if kind == "shell":
        return inspection

    try:
        source = path.read_text(encoding="utf-8")
        metadata = _python_metadata(source) if kind == "python" else _node_metadata(source)
    except (OSError, UnicodeDecodeError) as e:
        inspection.warnings.append(f"Unable to read file content: {e}")
        return inspection
    except (SyntaxError, ValueError) as e:
        inspection.warnings.append(f"Unable to extract schemas: {e}")
        return inspection

    if isinstance(metadata.get("INPUT_SCHEMA"), dict):
        inspection.input_schema = metadata["INPUT_SCHEMA"]
        inspection.has_input_schema = True
    else:
        inspection.warnings.append("No input schema detected")

    if isinstance(metadata.get("OUTPUT_SCHEMA"), dict):
        inspection.output_schema = metadata["OUTPUT_SCHEMA"]
        inspection.has_output_schema = True
    else:
        inspection.warnings.append("No output schema detected")

    if metadata.get("VERSION"):
        inspection.version = str(metadata["VERSION"])
    return inspection


class CollectorRunner:
    """Registry and sandboxed executor for collector programs."""

    def __init__(self, session_factory, settings: Settings | None = None):
        """Initialize collector runner.

        Args:
            session_factory: async_sessionmaker instance
            settings: Settings (default/test timeouts, kill grace period)
        """
        self.session_factory = session_factory
        self.settings = settings or Settings()

    inspect_collector_file = staticmethod(inspect_collector_file)

    # ------------------------------------------------------------------------
    # REGISTRY
    # ------------------------------------------------------------------------

    async def register_collector(
        self,
        path: str,
        name: str,
        description: str | None = None,
        timeout: int | None = None,
        environment: dict[str, str] | None = None,
    ) -> CollectorInfo:
        """Validate and register a collector program.

        Raises:
            ValidationError: file missing, not runnable, or name taken
        """
        resolved = Path(path).expanduser().resolve()
        inspection = inspect_collector_file(resolved)
        if not inspection.valid:
            raise ValidationError(
                f"Collector validation failed: {', '.join(inspection.errors)}",
                errors=inspection.errors,
            )

        async with self.session_factory.begin() as session:
            existing = await session.execute(select(Collector.id).where(Collector.name == name))
            if existing.scalar_one_or_none():
                raise ValidationError(f"Collector with name '{name}' already exists", name=name)

            row = Collector(
                name=name,
                description=description,
                file_path=str(resolved),
                input_schema=inspection.input_schema,
                output_schema=inspection.output_schema,
                timeout=timeout or self.settings.COLLECTOR_DEFAULT_TIMEOUT,
                enabled=True,
                version=inspection.version or "1.0.0",
                environment=environment,
                execution_count=0,
                total_execution_ms=0,
            )
            session.add(row)
            await session.flush()
            info = CollectorInfo.model_validate(row)

        logger.info(
            "collector_registered",
            name=name,
            type=inspection.type,
            warnings=inspection.warnings,
        )
        return info

    async def get_collector(self, identifier: str) -> CollectorInfo | None:
        """Look up a collector by id or name."""
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(Collector).where(
                        or_(Collector.id == identifier, Collector.name == identifier)
                    )
                )
            ).scalars().first()
            return CollectorInfo.model_validate(row) if row else None

    async def list_collectors(self, enabled_only: bool = False) -> list[CollectorInfo]:
        async with self.session_factory() as session:
            stmt = select(Collector).order_by(Collector.name)
            if enabled_only:
                stmt = stmt.where(Collector.enabled.is_(True))
            rows = (await session.execute(stmt)).scalars().all()
            return [CollectorInfo.model_validate(row) for row in rows]

    async def set_collector_enabled(self, identifier: str, enabled: bool) -> bool:
        collector = await self.get_collector(identifier)
        if collector is None:
            return False
        async with self.session_factory.begin() as session:
            result = await session.execute(
                update(Collector).where(Collector.id == collector.id).values(enabled=enabled)
            )
        logger.info("collector_enabled_changed", name=collector.name, enabled=enabled)
        return result.rowcount > 0

    async def remove_collector(self, identifier: str) -> bool:
        collector = await self.get_collector(identifier)
        if collector is None:
            return False
        async with self.session_factory.begin() as session:
            result = await session.execute(delete(Collector).where(Collector.id == collector.id))
        logger.info("collector_removed", name=collector.name)
        return result.rowcount > 0

    async def get_collector_stats(self) -> CollectorStats:
        async with self.session_factory() as session:
            total, enabled, executions, total_ms = (
                await session.execute(
                    select(
                        func.count(Collector.id),
                        func.count(Collector.id).filter(Collector.enabled.is_(True)),
                        func.coalesce(func.sum(Collector.execution_count), 0),
                        func.coalesce(func.sum(Collector.total_execution_ms), 0),
                    )
                )
            ).one()
            top = (
                await session.execute(
                    select(Collector)
                    .where(Collector.execution_count > 0)
                    .order_by(Collector.execution_count.desc(), Collector.last_executed.desc())
                    .limit(5)
                )
            ).scalars().all()

        return CollectorStats(
            total_collectors=total,
            enabled_collectors=enabled,
            disabled_collectors=total - enabled,
            total_executions=executions,
            average_execution_ms=(total_ms / executions) if executions else 0.0,
            most_used=[
                CollectorUsage(
                    id=row.id,
                    name=row.name,
                    execution_count=row.execution_count,
                    last_executed=row.last_executed,
                )
                for row in top
            ],
        )

    # ------------------------------------------------------------------------
    # EXECUTION
    # ------------------------------------------------------------------------

    async def execute_collector(
        self,
        identifier: str,
        input: dict[str, Any] | None = None,
        options: CollectorRunOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CollectorRunResult:
        """Run a collector and classify the outcome.

        Args:
            identifier: Collector id or name
            input: JSON object passed to the program
            options: Timeout/working directory/environment overrides
            cancel_token: Terminates the process when fired

        Returns:
            CollectorRunResult with status success, error or timeout

        Raises:
            NotFoundError: unknown collector
            OperationCancelledError: token fired while the process ran
        """
        opts = options or CollectorRunOptions()
        input = input or {}
        start = time.perf_counter()

        collector = await self.get_collector(identifier)
        if collector is None:
            raise NotFoundError(f"Collector '{identifier}' not found", collector=identifier)

        def failed(message: str) -> CollectorRunResult:
            return CollectorRunResult(
                collector_id=collector.id,
                status="error",
                error=message,
                execution_time_ms=(time.perf_counter() - start) * 1000,
            )

        if not collector.enabled:
            return failed(f"Collector '{collector.name}' is disabled")
        if not Path(collector.file_path).is_file():
            return failed(f"Collector file not found: {collector.file_path}")

        if opts.validate_input:
            errors = validate_parameters(collector.input_schema, input)
            if errors:
                return failed(f"Input validation failed: {', '.join(errors)}")

        with tracer.start_as_current_span("collector.run") as span:
            span.set_attribute("collector.name", collector.name)
            try:
                result = await self._run_process(collector, input, opts, cancel_token, start)
            except (OperationCancelledError, asyncio.CancelledError):
                # The process was spawned, so the run still counts.
                await self._record_run(collector, (time.perf_counter() - start) * 1000)
                collector_runs_total.labels(collector=collector.name, status="cancelled").inc()
                span.set_attribute("collector.status", "cancelled")
                logger.info("collector_cancelled", name=collector.name)
                raise
            span.set_attribute("collector.status", result.status)

        if result.status == "success" and opts.validate_output:
            errors = validate_parameters(collector.output_schema, result.output)
            if errors:
                result.status = "error"
                result.error = f"Output validation failed: {', '.join(errors)}"

        await self._record_run(collector, result.execution_time_ms)

        collector_runs_total.labels(collector=collector.name, status=result.status).inc()
        collector_run_duration.labels(collector=collector.name).observe(
            result.execution_time_ms / 1000
        )
        log = logger.info if result.status == "success" else logger.warning
        log(
            "collector_executed",
            name=collector.name,
            status=result.status,
            exit_code=result.exit_code,
            error=result.error,
        )
        return result

    async def _run_process(
        self,
        collector: CollectorInfo,
        input: dict[str, Any],
        opts: CollectorRunOptions,
        cancel_token: CancellationToken | None,
        start: float,
    ) -> CollectorRunResult:
        timeout = opts.timeout or collector.timeout
        working_directory = opts.working_directory or str(Path(collector.file_path).parent)
        environment = {**(collector.environment or {}), **opts.environment}
        payload = {
            "input": input,
            "context": {
                "execution_id": opts.execution_id or str(uuid.uuid4()),
                "collector_id": collector.id,
                "working_directory": working_directory,
                "timeout": timeout,
                "environment": environment,
            },
        }

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        try:
            process = await asyncio.create_subprocess_exec(
                *collector_command(collector.file_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_directory,
                env={**os.environ, **environment},
            )
        except OSError as e:
            return CollectorRunResult(
                collector_id=collector.id,
                status="error",
                error=f"Failed to start collector: {e}",
                execution_time_ms=elapsed_ms(),
            )

        try:
            stdout, stderr = await run_cancellable(
                asyncio.wait_for(process.communicate(json.dumps(payload).encode("utf-8")), timeout),
                cancel_token,
            )
        except asyncio.TimeoutError:
            await self._terminate(process)
            return CollectorRunResult(
                collector_id=collector.id,
                status="timeout",
                error=f"Collector timed out after {timeout}s",
                execution_time_ms=elapsed_ms(),
            )
        except (OperationCancelledError, asyncio.CancelledError):
            await self._terminate(process)
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        result = CollectorRunResult(
            collector_id=collector.id,
            status="success",
            stdout=stdout_text,
            stderr=stderr_text,
            exit_code=process.returncode,
            execution_time_ms=elapsed_ms(),
        )

        if process.returncode != 0:
            result.status = "error"
            result.error = stderr_text or f"Process exited with code {process.returncode}"
            return result

        try:
            output = json.loads(stdout_text)
        except ValueError:
            output = None
        if not isinstance(output, dict):
            result.status = "error"
            result.error = "Collector output is not a JSON object"
            return result

        result.output = output
        return result

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL once the grace period runs out."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(
                    process.wait(), self.settings.COLLECTOR_KILL_GRACE_SECONDS
                )
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    async def _record_run(self, collector: CollectorInfo, execution_ms: float) -> None:
        try:
            async with self.session_factory.begin() as session:
                await session.execute(
                    update(Collector)
                    .where(Collector.id == collector.id)
                    .values(
                        execution_count=Collector.execution_count + 1,
                        total_execution_ms=Collector.total_execution_ms + int(execution_ms),
                        last_executed=utcnow(),
                    )
                )
        except Exception as e:
            logger.warning("collector_stats_update_failed", name=collector.name, error=str(e))

    async def test_collector(self, identifier: str) -> CollectorRunResult:
        """Smoke-run a collector with an input sampled from its schema."""
        collector = await self.get_collector(identifier)
        if collector is None:
            raise NotFoundError(f"Collector '{identifier}' not found", collector=identifier)

        return await self.execute_collector(
            collector.id,
            sample_from_schema(collector.input_schema),
            CollectorRunOptions(
                timeout=self.settings.COLLECTOR_TEST_TIMEOUT,
                validate_input=False,
                validate_output=False,
            ),
        )
