"""Pytest fixtures.

Every test gets its own temp-file SQLite database and master key file.
Remote endpoints are stubbed with httpx.MockTransport.
"""

import json

import httpx
import pytest

from conductor_auth.store import CredentialStore
from conductor_config.settings import Settings
from conductor_memory.database import create_engine, create_session_factory, init_schema
from conductor_memory.models import Tool
from conductor_memory.stores import ConfigurationStore
from conductor_tools.schemas import ToolInfo


def rpc_result(request: httpx.Request, result, status_code: int = 200) -> httpx.Response:
    """Echo the request id back in a success envelope."""
    body = json.loads(request.content or b"{}")
    return httpx.Response(status_code, json={"id": body.get("id"), "result": result})


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient routed to `handler` (sync or async)."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: temp database, temp key file, fast crypto and retries."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'conductor.db'}",
        DATA_DIR=str(tmp_path),
        CREDENTIAL_KEY_PATH=str(tmp_path / "keys" / "master.key"),
        KEY_DERIVATION_ROUNDS=1000,
        PROTOCOL_RETRY_DELAY=0.0,
        DISCOVERY_RETRY_DELAY=0.0,
        QUERY_TIMEOUT=5.0,
        MCP_ENDPOINTS="",
        COLLECTOR_KILL_GRACE_SECONDS=1.0,
    )


@pytest.fixture
async def engine(settings):
    """Async engine with the schema created."""
    engine = create_engine(settings.DATABASE_URL)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def config_store(session_factory):
    return ConfigurationStore(session_factory)


@pytest.fixture
async def credential_store(session_factory, settings, config_store):
    """Initialized CredentialStore."""
    store = CredentialStore(session_factory, settings, config_store)
    await store.initialize()
    return store


@pytest.fixture
def make_tool(session_factory):
    """Factory inserting a Tool row and returning its ToolInfo."""

    async def _make_tool(
        name: str = "t1",
        endpoint: str = "http://tool.test",
        capabilities: list[str] | None = None,
        auth_required: bool = True,
        status: str = "active",
        version: str = "1.0.0",
    ) -> ToolInfo:
        async with session_factory.begin() as session:
            row = Tool(
                name=name,
                version=version,
                endpoint=endpoint,
                capabilities=capabilities or ["list_tools", "call_tool"],
                auth_config={"type": "api_key", "required": auth_required},
                status=status,
            )
            session.add(row)
            await session.flush()
            return ToolInfo.model_validate(row)

    return _make_tool
