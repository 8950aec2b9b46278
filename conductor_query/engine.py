"""Query Execution Engine.

Owns the Execution state machine:
pending -> running -> {completed | failed | timeout | cancelled}.
Terminal states are written with a conditional update, so they never change
once set.
"""

import asyncio
import time
import uuid
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update

from conductor_collectors.schemas import CollectorRunOptions
from conductor_config.settings import Settings
from conductor_core.cancellation import REASON_CANCELLED, REASON_TIMEOUT, CancellationToken
from conductor_core.exceptions import (
    ConductorError,
    ExecutionError,
    NotFoundError,
    ValidationError,
)
from conductor_core.validation import validate_parameters
from conductor_memory.models import Execution, Query, Tool, utcnow
from conductor_obs.logging import execution_context, get_logger
from conductor_obs.metrics import query_execution_duration, query_executions_total
from conductor_obs.tracing import get_tracer
from conductor_query.schemas import (
    LIVE_STATUSES,
    ExecutionHistory,
    ExecutionInfo,
    ExecutionOptions,
    ParameterValidation,
    QueryCreate,
    QueryExecutionResult,
    QueryFilters,
    QueryInfo,
    QueryList,
    QueryStats,
    QueryUpdate,
    QueryUsage,
)
from conductor_tools.schemas import ClientOptions, ToolInfo

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _pydantic_errors(e: PydanticValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


class QueryExecutionEngine:
    """Query lifecycle and timed, cancellable execution."""

    def __init__(
        self,
        session_factory,
        protocol_client,
        collector_runner=None,
        settings: Settings | None = None,
    ):
        """Initialize query engine.

        Args:
            session_factory: async_sessionmaker instance
            protocol_client: ProtocolClient performing the remote call
            collector_runner: Optional CollectorRunner for auxiliary input
            settings: Settings (default query timeout)
        """
        self.session_factory = session_factory
        self.protocol_client = protocol_client
        self.collector_runner = collector_runner
        self.settings = settings or Settings()
        self._active: dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------------
    # QUERY LIFECYCLE
    # ------------------------------------------------------------------------

    async def _require_active_tool(self, session, tool_id: str) -> Tool:
        tool = await session.get(Tool, tool_id)
        if tool is None:
            raise NotFoundError(f"Tool not found: {tool_id}", tool_id=tool_id)
        if tool.status != "active":
            raise ValidationError(
                f"Tool '{tool.name}' is {tool.status}, not active", tool_id=tool_id
            )
        return tool

    async def _require_unique_name(self, session, name: str, exclude_id: str | None = None) -> None:
        stmt = select(Query.id).where(Query.name == name)
        if exclude_id:
            stmt = stmt.where(Query.id != exclude_id)
        if (await session.execute(stmt)).scalar_one_or_none():
            raise ValidationError(f"Query with name '{name}' already exists", name=name)

    async def create_query(self, data: QueryCreate | dict[str, Any]) -> QueryInfo:
        """Create a query bound to an active tool.

        Raises:
            ValidationError: malformed definition or duplicate name
            NotFoundError: unknown tool
        """
        try:
            data = QueryCreate.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Query validation failed", errors=_pydantic_errors(e)) from e

        async with self.session_factory.begin() as session:
            await self._require_unique_name(session, data.name)
            await self._require_active_tool(session, data.tool_id)

            row = Query(**data.model_dump(), execution_count=0)
            session.add(row)
            await session.flush()
            query = QueryInfo.model_validate(row)

        logger.info("query_created", query_id=query.id, name=query.name)
        return query

    async def get_query(self, identifier: str) -> QueryInfo | None:
        """Look up a query by id or unique name."""
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(Query).where(or_(Query.id == identifier, Query.name == identifier))
                )
            ).scalars().first()
            return QueryInfo.model_validate(row) if row else None

    async def list_queries(
        self,
        filters: QueryFilters | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> QueryList:
        filters = filters or QueryFilters()
        conditions = []
        if filters.tool_id:
            conditions.append(Query.tool_id == filters.tool_id)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(or_(Query.name.like(pattern), Query.description.like(pattern)))
        if filters.created_after:
            conditions.append(Query.created_at >= filters.created_after)
        if filters.created_before:
            conditions.append(Query.created_at <= filters.created_before)
        if filters.last_executed_after:
            conditions.append(Query.last_executed >= filters.last_executed_after)
        if filters.has_been_executed is not None:
            conditions.append(
                Query.execution_count > 0
                if filters.has_been_executed
                else Query.execution_count == 0
            )

        async with self.session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(Query).where(*conditions))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(Query)
                    .where(*conditions)
                    .order_by(Query.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()

        queries = [QueryInfo.model_validate(row) for row in rows]
        return QueryList(queries=queries, total=total, has_more=offset + len(queries) < total)

    async def update_query(self, query_id: str, updates: QueryUpdate | dict[str, Any]) -> QueryInfo:
        """Apply a partial update.

        Raises:
            NotFoundError: unknown query or tool
            ValidationError: bad fields, duplicate name or inactive tool
        """
        try:
            updates = QueryUpdate.model_validate(updates)
        except PydanticValidationError as e:
            raise ValidationError("Query validation failed", errors=_pydantic_errors(e)) from e
        changes = updates.model_dump(exclude_unset=True)

        async with self.session_factory.begin() as session:
            row = await session.get(Query, query_id)
            if row is None:
                raise NotFoundError(f"Query with ID '{query_id}' not found", query_id=query_id)

            if changes.get("name") and changes["name"] != row.name:
                await self._require_unique_name(session, changes["name"], exclude_id=query_id)
            if changes.get("tool_id") and changes["tool_id"] != row.tool_id:
                await self._require_active_tool(session, changes["tool_id"])

            for field, value in changes.items():
                if value is None and field in ("name", "tool_id", "parameters", "operation"):
                    continue
                setattr(row, field, value)
            row.updated_at = utcnow()
            await session.flush()
            query = QueryInfo.model_validate(row)

        logger.info("query_updated", query_id=query_id, fields=sorted(changes))
        return query

    async def delete_query(self, query_id: str) -> bool:
        """Delete a query and its executions."""
        async with self.session_factory.begin() as session:
            await session.execute(delete(Execution).where(Execution.query_id == query_id))
            result = await session.execute(delete(Query).where(Query.id == query_id))

        if result.rowcount:
            logger.info("query_deleted", query_id=query_id)
        return result.rowcount > 0

    # ------------------------------------------------------------------------
    # EXECUTION
    # ------------------------------------------------------------------------

    def active_executions(self) -> list[str]:
        """Ids of executions holding a live cancellation handle."""
        return list(self._active)

    async def execute_query(
        self,
        query_id: str,
        parameters: dict[str, Any] | None = None,
        collector_inputs: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> QueryExecutionResult:
        """Run a query once.

        Args:
            query_id: Query id or name
            parameters: Values checked against the query's parameter schema
            collector_inputs: Pre-collected auxiliary data forwarded to the tool
            options: Timeout, persistence and collector invocations

        Returns:
            QueryExecutionResult with a terminal status

        Raises:
            NotFoundError: unknown query
        """
        opts = options or ExecutionOptions()
        parameters = parameters or {}
        execution_id = str(uuid.uuid4())
        started_at = utcnow()
        start = time.perf_counter()

        query = await self.get_query(query_id)
        if query is None:
            raise NotFoundError(f"Query with ID '{query_id}' not found", query_id=query_id)

        errors = validate_parameters(query.parameters, parameters)
        validation = ParameterValidation(valid=not errors, errors=errors)
        if errors and opts.validate_output:
            query_executions_total.labels(status="failed").inc()
            logger.info("query_parameters_invalid", query_id=query.id, errors=errors)
            return QueryExecutionResult(
                execution_id=execution_id,
                query_id=query.id,
                status="failed",
                error=f"Parameter validation failed: {', '.join(errors)}",
                started_at=started_at,
                parameter_validation=validation,
            )

        timeout = opts.timeout or query.timeout or self.settings.QUERY_TIMEOUT

        if opts.save_execution:
            async with self.session_factory.begin() as session:
                session.add(
                    Execution(
                        id=execution_id,
                        query_id=query.id,
                        parameters=parameters,
                        collector_inputs=collector_inputs or None,
                        status="running",
                        started_at=started_at,
                    )
                )

        token = CancellationToken()
        self._active[execution_id] = token
        timer = asyncio.get_running_loop().call_later(timeout, token.cancel, REASON_TIMEOUT)
        collected = dict(collector_inputs or {})
        credential_id = None

        with (
            execution_context(execution_id=execution_id, query_id=query.id),
            tracer.start_as_current_span("query.execute") as span,
        ):
            span.set_attribute("query.name", query.name)
            span.set_attribute("execution.id", execution_id)
            try:
                try:
                    result_data, credential_id = await self._perform(
                        execution_id, query, parameters, collected, opts, token
                    )
                    status, error = "completed", None
                except ConductorError as e:
                    result_data = None
                    credential_id = e.details.get("credential_id", credential_id)
                    status = (token.reason or REASON_CANCELLED) if token.cancelled else "failed"
                    error = e.message if status == "failed" else self._interrupted_message(token, timeout)
                except asyncio.CancelledError:
                    token.cancel(REASON_CANCELLED)
                    if opts.save_execution:
                        await self._finish(
                            execution_id,
                            query.id,
                            "cancelled",
                            error={"error": "Execution cancelled"},
                        )
                    raise
                except Exception as e:
                    logger.error("query_execution_unexpected_error", query_id=query.id, error=str(e))
                    result_data, status, error = None, "failed", f"Unexpected error: {str(e)}"

                # Past this point cancel_execution no longer sees the handle.
                timer.cancel()
                self._active.pop(execution_id, None)
                if status == "completed" and token.cancelled:
                    result_data, status = None, token.reason
                    error = self._interrupted_message(token, timeout)

                completed_at, stored = await self._finish(
                    execution_id,
                    query.id,
                    status,
                    result=result_data,
                    error={"error": error} if error else None,
                    credential_id=credential_id,
                    collected=collected,
                    persist=opts.save_execution,
                )
                if stored is not None and stored.status != status:
                    # A concurrent cancellation reached the row first.
                    result_data, status = None, stored.status
                    error = (stored.error_details or {}).get("error")
                    completed_at = stored.completed_at
            finally:
                timer.cancel()
                self._active.pop(execution_id, None)
            span.set_attribute("execution.status", status)

        elapsed = time.perf_counter() - start
        query_executions_total.labels(status=status).inc()
        query_execution_duration.observe(elapsed)
        log = logger.info if status == "completed" else logger.warning
        log("query_executed", query_id=query.id, execution_id=execution_id, status=status, error=error)

        return QueryExecutionResult(
            execution_id=execution_id,
            query_id=query.id,
            status=status,
            result=result_data,
            error=error,
            started_at=started_at,
            completed_at=completed_at,
            execution_time_ms=elapsed * 1000,
            parameter_validation=validation,
            credential_id=credential_id,
            collector_outputs=collected or None,
        )

    @staticmethod
    def _interrupted_message(token: CancellationToken, timeout: float) -> str:
        if token.reason == REASON_TIMEOUT:
            return f"Execution timed out after {timeout}s"
        return "Execution cancelled"

    async def _perform(
        self,
        execution_id: str,
        query: QueryInfo,
        parameters: dict[str, Any],
        collected: dict[str, Any],
        opts: ExecutionOptions,
        token: CancellationToken,
    ) -> tuple[Any, str | None]:
        """Collectors, then the remote call, all under `token`."""
        async with self.session_factory() as session:
            tool_row = await session.get(Tool, query.tool_id)
            if tool_row is None:
                raise NotFoundError(f"Tool not found: {query.tool_id}", tool_id=query.tool_id)
            tool = ToolInfo.model_validate(tool_row)
        if tool.status != "active":
            raise ExecutionError(f"Tool '{tool.name}' is {tool.status}")

        if opts.collectors:
            if self.collector_runner is None:
                raise ExecutionError("Collectors requested but no collector runner is configured")
            for name, collector_input in opts.collectors.items():
                run = await self.collector_runner.execute_collector(
                    name,
                    collector_input,
                    CollectorRunOptions(execution_id=execution_id),
                    cancel_token=token,
                )
                if run.status != "success":
                    raise ExecutionError(f"Collector '{name}' failed: {run.error}", collector=name)
                collected[name] = run.output

            if opts.save_execution:
                async with self.session_factory.begin() as session:
                    await session.execute(
                        update(Execution)
                        .where(Execution.id == execution_id)
                        .values(collector_inputs=collected)
                    )

        token.raise_if_cancelled()

        params = {**(query.operation.get("params") or {}), **parameters}
        if collected:
            params["collector_inputs"] = collected

        outcome = await self.protocol_client.call(
            tool,
            query.operation["method"],
            params,
            ClientOptions(timeout=opts.timeout or query.timeout or self.settings.QUERY_TIMEOUT),
            cancel_token=token,
        )
        token.raise_if_cancelled()
        if not outcome.success:
            raise ExecutionError(
                outcome.error or "Remote call failed",
                error_type=outcome.error_type,
                credential_id=outcome.credential_id,
            )
        return outcome.data, outcome.credential_id

    async def _finish(
        self,
        execution_id: str,
        query_id: str,
        status: str,
        result: Any = None,
        error: dict[str, Any] | None = None,
        credential_id: str | None = None,
        collected: dict[str, Any] | None = None,
        persist: bool = True,
    ):
        """Write the terminal state and, on completion, the query statistics.

        Both writes share one transaction. The execution row only moves if it
        is still pending/running; otherwise the row already stored is returned
        and the statistics are left alone.

        Returns:
            (completed_at, stored) where stored is None unless another writer
            finished the row first
        """
        completed_at = utcnow()
        stored = None
        async with self.session_factory.begin() as session:
            if persist:
                values = {
                    "status": status,
                    "completed_at": completed_at,
                    "result": result,
                    "error_details": error,
                }
                if credential_id:
                    values["credential_refs"] = [credential_id]
                if collected:
                    values["collector_inputs"] = collected
                moved = await session.execute(
                    update(Execution)
                    .where(Execution.id == execution_id, Execution.status.in_(LIVE_STATUSES))
                    .values(**values)
                )
                if moved.rowcount == 0:
                    stored = (
                        await session.execute(
                            select(
                                Execution.status, Execution.completed_at, Execution.error_details
                            ).where(Execution.id == execution_id)
                        )
                    ).one_or_none()
            if status == "completed" and stored is None:
                await session.execute(
                    update(Query)
                    .where(Query.id == query_id)
                    .values(execution_count=Query.execution_count + 1, last_executed=completed_at)
                )
        return completed_at, stored

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a live execution.

        Returns:
            True if a live handle existed, False for unknown or finished ids
        """
        token = self._active.get(execution_id)
        if token is None:
            return False

        if token.cancel(REASON_CANCELLED):
            async with self.session_factory.begin() as session:
                await session.execute(
                    update(Execution)
                    .where(Execution.id == execution_id, Execution.status.in_(LIVE_STATUSES))
                    .values(
                        status="cancelled",
                        completed_at=utcnow(),
                        error_details={"error": "Execution cancelled"},
                    )
                )
            logger.info("execution_cancelled", execution_id=execution_id)
        return True

    # ------------------------------------------------------------------------
    # READ MODELS
    # ------------------------------------------------------------------------

    async def get_execution(self, execution_id: str) -> ExecutionInfo | None:
        async with self.session_factory() as session:
            row = await session.get(Execution, execution_id)
            return ExecutionInfo.model_validate(row) if row else None

    async def get_execution_history(
        self,
        query_id: str,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
    ) -> ExecutionHistory:
        conditions = [Execution.query_id == query_id]
        if status:
            conditions.append(Execution.status == status)

        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(Execution).where(*conditions)
                )
            ).scalar_one()
            rows = (
                await session.execute(
                    select(Execution)
                    .where(*conditions)
                    .order_by(Execution.started_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()

        executions = [ExecutionInfo.model_validate(row) for row in rows]
        return ExecutionHistory(
            executions=executions,
            total=total,
            has_more=offset + len(executions) < total,
        )

    async def get_query_stats(self, query_id: str | None = None) -> QueryStats:
        """Aggregate execution outcomes, optionally for one query."""
        async with self.session_factory() as session:
            query_stmt = select(func.count()).select_from(Query)
            exec_stmt = select(Execution.status, Execution.started_at, Execution.completed_at)
            top_stmt = (
                select(Query)
                .order_by(Query.execution_count.desc(), Query.last_executed.desc())
                .limit(10)
            )
            if query_id:
                query_stmt = query_stmt.where(Query.id == query_id)
                exec_stmt = exec_stmt.where(Execution.query_id == query_id)
                top_stmt = top_stmt.where(Query.id == query_id)

            total_queries = (await session.execute(query_stmt)).scalar_one()
            executions = (await session.execute(exec_stmt)).all()
            top = (await session.execute(top_stmt)).scalars().all()

        stats = QueryStats(total_queries=total_queries, total_executions=len(executions))
        durations = []
        for status, started_at, completed_at in executions:
            if status == "completed":
                stats.successful_executions += 1
            elif status == "failed":
                stats.failed_executions += 1
            elif status == "timeout":
                stats.timeout_executions += 1
            elif status == "cancelled":
                stats.cancelled_executions += 1
            if started_at and completed_at:
                durations.append((completed_at - started_at).total_seconds() * 1000)

        if durations:
            stats.average_execution_time_ms = sum(durations) / len(durations)
        stats.top_queries = [
            QueryUsage(
                id=row.id,
                name=row.name,
                execution_count=row.execution_count,
                last_executed=row.last_executed,
            )
            for row in top
        ]
        return stats
