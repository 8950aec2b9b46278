"""Protocol HTTP Client.

JSON-RPC style exchanges with tool endpoints:
POST <endpoint>/mcp {method, params, id} -> {id, result} | {id, error}.
"""

import asyncio
import time
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from conductor_config.settings import Settings
from conductor_core.cancellation import CancellationToken, run_cancellable
from conductor_core.exceptions import (
    AuthError,
    ConductorError,
    ExecutionError,
    OperationCancelledError,
    OperationTimeoutError,
    TransportError,
    ValidationError,
)
from conductor_obs.logging import get_logger
from conductor_obs.metrics import protocol_request_duration, protocol_requests_total
from conductor_obs.tracing import get_tracer
from conductor_tools.retry import retry_async
from conductor_tools.schemas import (
    ClientOptions,
    ClientStats,
    OperationResult,
    ProtocolRequest,
    ProtocolResponse,
    ToolInfo,
)

logger = get_logger(__name__)
tracer = get_tracer(__name__)

AUTH_FAILURE_STATUSES = (401, 403)

ERROR_TYPES = (
    (AuthError, "auth"),
    (TransportError, "transport"),
    (OperationTimeoutError, "timeout"),
    (OperationCancelledError, "cancelled"),
    (ValidationError, "validation"),
    (ExecutionError, "protocol"),
)


def mcp_url(endpoint: str) -> str:
    return endpoint if endpoint.endswith("/mcp") else f"{endpoint.rstrip('/')}/mcp"


def classify_error(error: BaseException) -> str:
    for error_class, error_type in ERROR_TYPES:
        if isinstance(error, error_class):
            return error_type
    return "error"


class ProtocolClient:
    """Authenticated protocol client for registered tools."""

    # operation -> capability the tool must advertise
    REQUIRED_CAPABILITIES = {
        "list_resources": "list_resources",
        "read_resource": "read_resource",
        "subscribe_resource": "subscribe_resource",
        "list_tools": "list_tools",
        "call_tool": "call_tool",
        "list_prompts": "list_prompts",
        "get_prompt": "get_prompt",
    }

    def __init__(
        self,
        credential_store,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize protocol client.

        Args:
            credential_store: CredentialStore resolving per-tool headers
            settings: Settings (timeouts, retry policy, user agent)
            http_client: Optional shared client (tests inject MockTransport)
        """
        self.credential_store = credential_store
        self.settings = settings or Settings()
        self.client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self._request_counter = 0
        self._active_requests = 0

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"mcp_{int(time.time() * 1000)}_{self._request_counter}"

    def _resolve_options(self, options: ClientOptions | None) -> ClientOptions:
        options = options or ClientOptions()
        return ClientOptions(
            timeout=options.timeout or self.settings.QUERY_TIMEOUT,
            retry_attempts=(
                self.settings.PROTOCOL_RETRY_ATTEMPTS
                if options.retry_attempts is None
                else options.retry_attempts
            ),
            retry_delay=(
                self.settings.PROTOCOL_RETRY_DELAY
                if options.retry_delay is None
                else options.retry_delay
            ),
            user_agent=options.user_agent or self.settings.PROTOCOL_USER_AGENT,
            validate_response=(
                self.settings.PROTOCOL_VALIDATE_RESPONSE
                if options.validate_response is None
                else options.validate_response
            ),
        )

    @staticmethod
    def _base_headers(opts: ClientOptions) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": opts.user_agent,
        }

    # ------------------------------------------------------------------------
    # CORE CALL
    # ------------------------------------------------------------------------

    async def call(
        self,
        tool,
        method: str,
        params: dict[str, Any] | None = None,
        options: ClientOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> OperationResult:
        """Call a protocol method on a tool.

        Resolves the tool's credential, POSTs the envelope, and retries
        transport failures with exponential backoff. 401/403 are never retried.

        Args:
            tool: ToolInfo (or Tool row)
            method: Protocol method name
            params: Method parameters
            options: Per-call overrides
            cancel_token: Aborts the in-flight request when fired

        Returns:
            OperationResult (never raises for remote failures)
        """
        tool = ToolInfo.model_validate(tool)
        opts = self._resolve_options(options)
        request_id = self._next_request_id()
        request = ProtocolRequest(method=method, params=params or {}, id=request_id)
        credential_id = None
        attempts = 0
        start = time.perf_counter()

        async def attempt(n: int) -> Any:
            nonlocal attempts
            attempts = n + 1
            return await self._send(tool.endpoint, request, headers, opts.timeout)

        self._active_requests += 1
        with tracer.start_as_current_span("protocol.call") as span:
            span.set_attribute("protocol.method", method)
            span.set_attribute("tool.name", tool.name)
            try:
                headers = self._base_headers(opts)
                resolved = await run_cancellable(
                    self.credential_store.get_auth_headers(tool.id), cancel_token
                )
                if resolved is not None:
                    credential_id, auth_headers = resolved
                    headers.update(auth_headers)
                elif tool.auth_config.required:
                    raise AuthError(f"No credentials found for tool '{tool.name}'")

                raw = await run_cancellable(
                    retry_async(
                        attempt,
                        retry_attempts=opts.retry_attempts,
                        retry_delay=opts.retry_delay,
                        cancel_token=cancel_token,
                        operation_name=method,
                    ),
                    cancel_token,
                )
                data = self._parse_response(raw, opts.validate_response)
                result = OperationResult(
                    success=True,
                    data=data,
                    request_id=request_id,
                    credential_id=credential_id,
                    attempts=attempts,
                )
            except ConductorError as e:
                result = OperationResult(
                    success=False,
                    error=e.message,
                    error_type=classify_error(e),
                    request_id=request_id,
                    credential_id=credential_id,
                    attempts=attempts,
                )
            except Exception as e:
                logger.error("protocol_call_unexpected_error", method=method, error=str(e))
                result = OperationResult(
                    success=False,
                    error=f"Unexpected error: {str(e)}",
                    error_type="error",
                    request_id=request_id,
                    credential_id=credential_id,
                    attempts=attempts,
                )
            finally:
                self._active_requests -= 1

            elapsed = time.perf_counter() - start
            result.response_time_ms = elapsed * 1000
            span.set_attribute("protocol.success", result.success)

        status = "success" if result.success else "failure"
        protocol_requests_total.labels(method=method, status=status).inc()
        protocol_request_duration.labels(method=method).observe(elapsed)

        if result.success:
            logger.debug("protocol_call_completed", method=method, tool=tool.name, attempts=attempts)
        else:
            logger.warning(
                "protocol_call_failed",
                method=method,
                tool=tool.name,
                error=result.error,
                error_type=result.error_type,
                attempts=attempts,
            )
        return result

    async def _send(
        self,
        endpoint: str,
        request: ProtocolRequest,
        headers: dict[str, str],
        timeout: float,
    ) -> Any:
        """Single HTTP exchange bounded by `timeout`.

        Raises:
            AuthError: 401/403
            TransportError: network failure or other non-2xx status
            OperationTimeoutError: deadline exceeded
        """
        try:
            response = await asyncio.wait_for(
                self.client.post(
                    mcp_url(endpoint),
                    json=request.model_dump(exclude_none=True),
                    headers=headers,
                    timeout=timeout,
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise OperationTimeoutError(f"Request timeout after {timeout}s") from None
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

        if response.status_code in AUTH_FAILURE_STATUSES:
            raise AuthError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise TransportError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError("Response body is not valid JSON") from e

    @staticmethod
    def _parse_response(raw: Any, validate: bool) -> Any:
        """Unwrap the envelope; a protocol `error` is a failure even on 200."""
        if not validate:
            if isinstance(raw, dict):
                error = raw.get("error")
                if error:
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    raise ExecutionError(f"Protocol error: {message}", error=error)
                return raw.get("result", raw)
            return raw

        if not isinstance(raw, dict):
            raise ValidationError("Invalid response envelope: expected a JSON object")
        try:
            envelope = ProtocolResponse.model_validate(raw)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("Invalid response envelope", errors=errors) from e

        if envelope.error is not None:
            raise ExecutionError(
                f"Protocol error {envelope.error.code}: {envelope.error.message}",
                code=envelope.error.code,
                data=envelope.error.data,
            )
        return envelope.result

    # ------------------------------------------------------------------------
    # CONVENIENCE OPERATIONS
    # ------------------------------------------------------------------------

    async def list_resources(self, tool, options=None, cancel_token=None) -> OperationResult:
        return await self.call(tool, "list_resources", {}, options, cancel_token)

    async def read_resource(self, tool, uri: str, options=None, cancel_token=None) -> OperationResult:
        return await self.call(tool, "read_resource", {"uri": uri}, options, cancel_token)

    async def list_tools(self, tool, options=None, cancel_token=None) -> OperationResult:
        return await self.call(tool, "list_tools", {}, options, cancel_token)

    async def call_tool_function(
        self,
        tool,
        function_name: str,
        arguments: dict[str, Any] | None = None,
        options=None,
        cancel_token=None,
    ) -> OperationResult:
        params = {"name": function_name, "arguments": arguments or {}}
        return await self.call(tool, "call_tool", params, options, cancel_token)

    async def list_prompts(self, tool, options=None, cancel_token=None) -> OperationResult:
        return await self.call(tool, "list_prompts", {}, options, cancel_token)

    async def get_prompt(
        self,
        tool,
        name: str,
        arguments: dict[str, Any] | None = None,
        options=None,
        cancel_token=None,
    ) -> OperationResult:
        params = {"name": name, "arguments": arguments or {}}
        return await self.call(tool, "get_prompt", params, options, cancel_token)

    async def subscribe_resource(self, tool, uri: str, options=None, cancel_token=None) -> OperationResult:
        return await self.call(tool, "subscribe_resource", {"uri": uri}, options, cancel_token)

    async def unsubscribe_resource(self, tool, uri: str, options=None, cancel_token=None) -> OperationResult:
        return await self.call(tool, "unsubscribe_resource", {"uri": uri}, options, cancel_token)

    async def get_server_info(self, tool) -> OperationResult:
        options = ClientOptions(timeout=self.settings.HEALTH_CHECK_TIMEOUT, retry_attempts=1)
        return await self.call(tool, "server_info", {}, options)

    async def test_connection(self, tool) -> OperationResult:
        """Unauthenticated single-shot `server_info` probe for health checks."""
        tool = ToolInfo.model_validate(tool)
        opts = self._resolve_options(
            ClientOptions(timeout=self.settings.HEALTH_CHECK_TIMEOUT, retry_attempts=0)
        )
        request_id = self._next_request_id()
        request = ProtocolRequest(method="server_info", id=request_id)
        start = time.perf_counter()
        try:
            data = await self._send(
                tool.endpoint, request, self._base_headers(opts), opts.timeout
            )
            return OperationResult(
                success=True,
                data=data,
                request_id=request_id,
                attempts=1,
                response_time_ms=(time.perf_counter() - start) * 1000,
            )
        except ConductorError as e:
            return OperationResult(
                success=False,
                error=e.message,
                error_type=classify_error(e),
                request_id=request_id,
                attempts=1,
                response_time_ms=(time.perf_counter() - start) * 1000,
            )

    # ------------------------------------------------------------------------
    # CAPABILITIES AND STATE
    # ------------------------------------------------------------------------

    @staticmethod
    def validate_capability(tool, capability: str) -> bool:
        return capability in ToolInfo.model_validate(tool).capabilities

    def supports_operation(self, tool, operation: str) -> bool:
        capability = self.REQUIRED_CAPABILITIES.get(operation)
        if capability is None:
            return False
        return self.validate_capability(tool, capability)

    def get_stats(self) -> ClientStats:
        return ClientStats(
            request_count=self._request_counter,
            active_requests=self._active_requests,
        )

    def reset(self) -> None:
        self._request_counter = 0

    async def close(self):
        """Close HTTP client."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
