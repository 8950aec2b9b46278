"""Composition root.

Builds the engine, session factory and the five core components, wiring each
one's dependencies explicitly.
"""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from conductor_auth.store import CredentialStore
from conductor_collectors.runner import CollectorRunner
from conductor_config.settings import Settings
from conductor_memory.database import create_engine, create_session_factory, init_schema
from conductor_memory.stores import ConfigurationStore
from conductor_obs.logging import get_logger, setup_logging
from conductor_obs.tracing import setup_tracing
from conductor_query.engine import QueryExecutionEngine
from conductor_tools.client import ProtocolClient
from conductor_tools.discovery import DiscoveryEngine

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    session_factory: object
    http_client: httpx.AsyncClient
    config_store: ConfigurationStore
    credentials: CredentialStore
    protocol: ProtocolClient
    discovery: DiscoveryEngine
    collectors: CollectorRunner
    queries: QueryExecutionEngine
    owns_http_client: bool = True

    async def close(self) -> None:
        """Dispose the database engine and any HTTP client built here."""
        if self.owns_http_client:
            await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("runtime_closed")


async def create_runtime(
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    configure_logging: bool = False,
) -> Runtime:
    """Build and initialize every core component.

    Args:
        settings: Settings (defaults to environment)
        http_client: Shared client for protocol, discovery and auth probes
        configure_logging: Also install structlog configuration

    Returns:
        Runtime with an initialized credential store
    """
    settings = settings or Settings()
    if configure_logging:
        setup_logging(settings)

    engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    setup_tracing(settings, engine)
    if settings.DATABASE_AUTO_CREATE:
        await init_schema(engine)

    session_factory = create_session_factory(engine)
    owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient()

    config_store = ConfigurationStore(session_factory)
    credentials = CredentialStore(session_factory, settings, config_store, http_client)
    await credentials.initialize()

    protocol = ProtocolClient(credentials, settings, http_client)
    discovery = DiscoveryEngine(session_factory, settings, http_client)
    collectors = CollectorRunner(session_factory, settings)
    queries = QueryExecutionEngine(session_factory, protocol, collectors, settings)

    logger.info("runtime_ready", database=engine.url.render_as_string(hide_password=True))
    return Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        config_store=config_store,
        credentials=credentials,
        protocol=protocol,
        discovery=discovery,
        collectors=collectors,
        queries=queries,
        owns_http_client=owns_http_client,
    )
