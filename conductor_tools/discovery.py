"""Tool Discovery Engine.

Probes `GET <endpoint>/mcp/capabilities`, caches successful results per
endpoint, and persists discovered tools.
"""

import asyncio
import os
import time
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select

from conductor_config.settings import Settings
from conductor_core.exceptions import (
    ConductorError,
    NotFoundError,
    OperationTimeoutError,
    TransportError,
    ValidationError,
)
from conductor_memory.models import TOOL_STATUSES, Tool, utcnow
from conductor_obs.logging import get_logger
from conductor_obs.metrics import discovery_probes_total
from conductor_obs.tracing import get_tracer
from conductor_tools.retry import retry_async
from conductor_tools.schemas import (
    AuthConfig,
    DiscoveryOptions,
    DiscoveryStats,
    RefreshResult,
    SaveToolsResult,
    ToolCandidate,
    ToolDiscoveryResult,
    ToolInfo,
)

logger = get_logger(__name__)
tracer = get_tracer(__name__)

MAX_NUMBERED_ENDPOINTS = 10


def is_valid_endpoint(endpoint: str) -> bool:
    try:
        url = httpx.URL(endpoint)
    except (httpx.InvalidURL, TypeError):
        return False
    return url.scheme in ("http", "https") and bool(url.host)


def chunked(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def parse_capabilities(endpoint: str, data: Any) -> list[ToolCandidate]:
    """Parse a capability payload.

    Accepts `{tools: [...]}` or the single-tool form
    `{name?, version?, capabilities: [...]}`.

    Raises:
        ValidationError: payload has neither shape or yields no tools
    """
    if not isinstance(data, dict):
        raise ValidationError("Capability response must be a JSON object")

    discovered_at = utcnow().isoformat()
    candidates = []
    try:
        if isinstance(data.get("tools"), list):
            for tool_data in data["tools"]:
                auth = tool_data.get("auth") or {}
                candidates.append(
                    ToolCandidate(
                        name=tool_data.get("name") or "unknown",
                        version=tool_data.get("version") or "1.0.0",
                        description=tool_data.get("description"),
                        endpoint=endpoint,
                        capabilities=tool_data.get("capabilities") or [],
                        auth_config=AuthConfig(
                            type=auth.get("type") or "api_key",
                            required=auth.get("required", True),
                        ),
                        tool_schema=tool_data.get("schema"),
                        discovery_data={
                            "discovered_at": discovered_at,
                            "endpoint": endpoint,
                            "server_info": data.get("server_info") or data.get("info"),
                        },
                    )
                )
        elif isinstance(data.get("capabilities"), list):
            candidates.append(
                ToolCandidate(
                    name=data.get("name") or httpx.URL(endpoint).host,
                    version=data.get("version") or "1.0.0",
                    description=data.get("description") or f"MCP tool at {endpoint}",
                    endpoint=endpoint,
                    capabilities=data["capabilities"],
                    auth_config=AuthConfig(
                        type=data.get("auth_type") or "api_key",
                        required=data.get("auth_required", True),
                    ),
                    discovery_data={"discovered_at": discovered_at, "endpoint": endpoint},
                )
            )
    except (AttributeError, PydanticValidationError) as e:
        raise ValidationError(f"Failed to parse capability response: {e}") from e

    if not candidates:
        raise ValidationError("No tools found in capability response")
    return candidates


class DiscoveryEngine:
    """Endpoint prober with capability cache and bounded fan-out."""

    def __init__(
        self,
        session_factory,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize discovery engine.

        Args:
            session_factory: async_sessionmaker instance
            settings: Settings (timeouts, retry policy, concurrency, cache TTL)
            http_client: Optional shared client (tests inject MockTransport)
        """
        self.session_factory = session_factory
        self.settings = settings or Settings()
        self.client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self._cache: dict[str, tuple[ToolDiscoveryResult, float]] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._cache_hits = 0
        self._cache_misses = 0
        self._probes = 0

    def _resolve_options(self, options: DiscoveryOptions | None) -> DiscoveryOptions:
        options = options or DiscoveryOptions()
        s = self.settings
        return DiscoveryOptions(
            timeout=options.timeout or s.DISCOVERY_TIMEOUT,
            retry_attempts=(
                s.DISCOVERY_RETRY_ATTEMPTS if options.retry_attempts is None else options.retry_attempts
            ),
            retry_delay=s.DISCOVERY_RETRY_DELAY if options.retry_delay is None else options.retry_delay,
            max_concurrency=options.max_concurrency or s.DISCOVERY_MAX_CONCURRENCY,
            cache_timeout=(
                s.DISCOVERY_CACHE_TIMEOUT if options.cache_timeout is None else options.cache_timeout
            ),
        )

    # ------------------------------------------------------------------------
    # CACHE
    # ------------------------------------------------------------------------

    def _get_cached(self, endpoint: str) -> ToolDiscoveryResult | None:
        entry = self._cache.get(endpoint)
        if entry is None:
            return None
        result, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._cache[endpoint]
            return None
        return result

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------------
    # DISCOVERY
    # ------------------------------------------------------------------------

    async def discover_from_endpoint(
        self, endpoint: str, options: DiscoveryOptions | None = None
    ) -> ToolDiscoveryResult:
        """Probe one endpoint, serving from cache within the TTL.

        Concurrent calls for the same endpoint share one in-flight probe.
        """
        opts = self._resolve_options(options)
        use_cache = opts.cache_timeout > 0

        if use_cache:
            cached = self._get_cached(endpoint)
            if cached is not None:
                self._cache_hits += 1
                discovery_probes_total.labels(status="cached").inc()
                return cached.model_copy(update={"cached": True})
            self._cache_misses += 1

        task = self._in_flight.get(endpoint)
        if task is None:
            task = asyncio.ensure_future(self._perform_discovery(endpoint, opts))
            self._in_flight[endpoint] = task
            task.add_done_callback(lambda _: self._in_flight.pop(endpoint, None))

        result = await asyncio.shield(task)

        if use_cache and result.status == "success":
            self._cache[endpoint] = (result, time.monotonic() + opts.cache_timeout)
        return result

    async def _perform_discovery(self, endpoint: str, opts: DiscoveryOptions) -> ToolDiscoveryResult:
        start = time.perf_counter()
        status = "error"
        tools: list[ToolCandidate] = []
        error = None

        if not is_valid_endpoint(endpoint):
            error = f"Invalid endpoint URL: {endpoint}"
        else:
            with tracer.start_as_current_span("discovery.probe") as span:
                span.set_attribute("discovery.endpoint", endpoint)
                try:
                    tools = await retry_async(
                        lambda attempt: self._probe(endpoint, opts.timeout),
                        retry_attempts=opts.retry_attempts,
                        retry_delay=opts.retry_delay,
                        should_retry=lambda e: True,
                        operation_name="discovery_probe",
                    )
                    status = "success"
                except OperationTimeoutError as e:
                    status, error = "timeout", e.message
                except ConductorError as e:
                    error = e.message
                span.set_attribute("discovery.status", status)

        discovery_probes_total.labels(status=status).inc()
        if status == "success":
            logger.info("endpoint_discovered", endpoint=endpoint, tools=len(tools))
        else:
            logger.warning("endpoint_discovery_failed", endpoint=endpoint, status=status, error=error)

        return ToolDiscoveryResult(
            endpoint=endpoint,
            status=status,
            tools=tools,
            error=error,
            response_time_ms=(time.perf_counter() - start) * 1000,
            discovered_at=utcnow(),
        )

    async def _probe(self, endpoint: str, timeout: float) -> list[ToolCandidate]:
        self._probes += 1
        url = f"{endpoint.rstrip('/')}/mcp/capabilities"
        headers = {"Accept": "application/json", "User-Agent": self.settings.PROTOCOL_USER_AGENT}
        try:
            response = await asyncio.wait_for(
                self.client.get(url, headers=headers, timeout=timeout), timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise OperationTimeoutError(f"Request timeout after {timeout}s") from None
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

        if not response.is_success:
            raise TransportError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Capability response is not valid JSON") from e
        return parse_capabilities(endpoint, data)

    async def discover_from_endpoints(
        self, endpoints: list[str], options: DiscoveryOptions | None = None
    ) -> list[ToolDiscoveryResult]:
        """Probe endpoints in chunks of at most `max_concurrency`.

        One result per endpoint, in input order; failures never abort the batch.
        """
        opts = self._resolve_options(options)
        results: list[ToolDiscoveryResult] = []

        for chunk in chunked(list(endpoints), opts.max_concurrency):
            outcomes = await asyncio.gather(
                *(self.discover_from_endpoint(endpoint, opts) for endpoint in chunk),
                return_exceptions=True,
            )
            for endpoint, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    outcome = ToolDiscoveryResult(
                        endpoint=endpoint, status="error", error=str(outcome)
                    )
                results.append(outcome)

        return results

    def environment_endpoints(self) -> list[str]:
        """Endpoint hints from MCP_ENDPOINTS and MCP_ENDPOINT_1..10."""
        hints = [e.strip() for e in self.settings.MCP_ENDPOINTS.split(",") if e.strip()]
        for i in range(1, MAX_NUMBERED_ENDPOINTS + 1):
            value = os.environ.get(f"MCP_ENDPOINT_{i}")
            if value:
                hints.append(value.strip())
        return [e for e in hints if is_valid_endpoint(e)]

    async def auto_discover_local(self) -> ToolDiscoveryResult:
        """Probe the default local endpoints plus environment hints."""
        start = time.perf_counter()
        endpoints = list(
            dict.fromkeys(self.settings.DISCOVERY_LOCAL_ENDPOINTS + self.environment_endpoints())
        )
        results = await self.discover_from_endpoints(
            endpoints,
            DiscoveryOptions(timeout=self.settings.DISCOVERY_LOCAL_TIMEOUT, retry_attempts=1),
        )

        tools = []
        errors = []
        for result in results:
            if result.status == "success":
                tools.extend(result.tools)
            elif result.error:
                errors.append(f"{result.endpoint}: {result.error}")

        return ToolDiscoveryResult(
            endpoint="auto-discovery",
            status="success" if tools else "error",
            tools=tools,
            error="; ".join(errors) or None,
            response_time_ms=(time.perf_counter() - start) * 1000,
            discovered_at=utcnow(),
        )

    # ------------------------------------------------------------------------
    # PERSISTENCE
    # ------------------------------------------------------------------------

    @staticmethod
    def _changed(row: Tool, candidate: ToolCandidate) -> bool:
        return (
            row.endpoint != candidate.endpoint
            or row.capabilities != candidate.capabilities
            or row.auth_config != candidate.auth_config.model_dump(mode="json")
            or row.tool_schema != candidate.tool_schema
        )

    async def save_tools(self, candidates: list[ToolCandidate]) -> SaveToolsResult:
        """Upsert discovered tools keyed by name+version.

        Unchanged tools only get `last_checked` bumped and count as skipped.
        """
        result = SaveToolsResult()

        for candidate in candidates:
            try:
                candidate = ToolCandidate.model_validate(candidate)
                async with self.session_factory.begin() as session:
                    existing = (
                        await session.execute(
                            select(Tool).where(
                                Tool.name == candidate.name, Tool.version == candidate.version
                            )
                        )
                    ).scalar_one_or_none()

                    now = utcnow()
                    if existing is None:
                        row = Tool(
                            name=candidate.name,
                            version=candidate.version,
                            description=candidate.description,
                            endpoint=candidate.endpoint,
                            capabilities=candidate.capabilities,
                            auth_config=candidate.auth_config.model_dump(mode="json"),
                            tool_schema=candidate.tool_schema,
                            discovery_data=candidate.discovery_data,
                            status="active",
                            last_checked=now,
                        )
                        session.add(row)
                    elif self._changed(existing, candidate):
                        row = existing
                        row.description = candidate.description or row.description
                        row.endpoint = candidate.endpoint
                        row.capabilities = candidate.capabilities
                        row.auth_config = candidate.auth_config.model_dump(mode="json")
                        row.tool_schema = candidate.tool_schema
                        row.discovery_data = candidate.discovery_data
                        row.last_checked = now
                    else:
                        existing.last_checked = now
                        result.skipped += 1
                        continue

                    await session.flush()
                    result.saved.append(ToolInfo.model_validate(row))
            except (PydanticValidationError, ConductorError) as e:
                name = getattr(candidate, "name", None) or "unknown"
                result.errors.append(f"Tool {name}: {e}")
            except Exception as e:
                logger.error("tool_save_failed", error=str(e))
                result.errors.append(f"Tool {getattr(candidate, 'name', 'unknown')}: {e}")

        logger.info(
            "tools_saved",
            saved=len(result.saved),
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def refresh_tool_capabilities(self, tool_ids: list[str] | None = None) -> RefreshResult:
        """Re-probe tools (all active ones by default), bypassing the cache.

        `last_checked` is bumped on every probed tool whatever the outcome.
        """
        async with self.session_factory() as session:
            stmt = select(Tool)
            if tool_ids:
                stmt = stmt.where(Tool.id.in_(tool_ids))
            else:
                stmt = stmt.where(Tool.status == "active")
            tools = [ToolInfo.model_validate(t) for t in (await session.execute(stmt)).scalars()]

        result = RefreshResult()
        no_cache = DiscoveryOptions(cache_timeout=0)

        for tool in tools:
            probe = await self.discover_from_endpoint(tool.endpoint, no_cache)
            match = next((c for c in probe.tools if c.name == tool.name), None)

            async with self.session_factory.begin() as session:
                row = await session.get(Tool, tool.id)
                if row is None:
                    continue
                row.last_checked = utcnow()

                if probe.status != "success":
                    result.errors.append(f"{tool.name}: {probe.error}")
                elif match is None:
                    result.errors.append(f"{tool.name}: tool no longer advertised at {tool.endpoint}")
                elif self._changed(row, match):
                    row.capabilities = match.capabilities
                    row.auth_config = match.auth_config.model_dump(mode="json")
                    row.tool_schema = match.tool_schema
                    row.discovery_data = match.discovery_data
                    result.updated.append(tool.id)
                else:
                    result.unchanged.append(tool.id)

        logger.info(
            "tool_capabilities_refreshed",
            updated=len(result.updated),
            unchanged=len(result.unchanged),
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------------
    # READ MODELS AND LIFECYCLE
    # ------------------------------------------------------------------------

    async def get_tool(self, identifier: str) -> ToolInfo | None:
        """Look up a tool by id, or by name (newest version wins)."""
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(Tool)
                    .where(or_(Tool.id == identifier, Tool.name == identifier))
                    .order_by((Tool.id == identifier).desc(), Tool.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            return ToolInfo.model_validate(row) if row else None

    async def list_tools(self, status: str | None = None) -> list[ToolInfo]:
        async with self.session_factory() as session:
            stmt = select(Tool).order_by(Tool.name, Tool.version)
            if status:
                stmt = stmt.where(Tool.status == status)
            rows = (await session.execute(stmt)).scalars().all()
            return [ToolInfo.model_validate(row) for row in rows]

    async def set_tool_status(self, tool_id: str, status: str) -> ToolInfo:
        """Change a tool's lifecycle status (tools are never deleted)."""
        if status not in TOOL_STATUSES:
            raise ValidationError(f"Invalid tool status: {status}", status=status)
        async with self.session_factory.begin() as session:
            row = await session.get(Tool, tool_id)
            if row is None:
                raise NotFoundError(f"Tool not found: {tool_id}", tool_id=tool_id)
            row.status = status
            await session.flush()
            return ToolInfo.model_validate(row)

    async def get_stats(self) -> DiscoveryStats:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(Tool.status, func.count()).group_by(Tool.status)
            )
            by_status = {status: count for status, count in rows.all()}

        return DiscoveryStats(
            cache_size=len(self._cache),
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            probes=self._probes,
            in_flight=len(self._in_flight),
            tools_by_status=by_status,
        )

    async def close(self):
        """Close HTTP client."""
        for task in list(self._in_flight.values()):
            task.cancel()
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
