"""Key-value configuration store.

Backs the `configuration` table the persistence contract requires.
"""

from typing import Any

from sqlalchemy import delete, select

from conductor_memory.models import CONFIG_CATEGORIES, ConfigEntry, utcnow


class ConfigurationStore:
    """Postgres/SQLite storage for system configuration values.

    Values are JSON documents grouped by category (security, performance,
    discovery, logging, general).
    """

    def __init__(self, session_factory):
        """Initialize configuration store.

        Args:
            session_factory: async_sessionmaker instance
        """
        self.session_factory = session_factory

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for `key`, or `default`."""
        async with self.session_factory() as session:
            entry = await session.get(ConfigEntry, key)
            return entry.value if entry else default

    async def set(
        self,
        key: str,
        value: Any,
        category: str = "general",
        description: str | None = None,
    ) -> None:
        """Insert or update a configuration value.

        Args:
            key: Dotted key (e.g. security.master_key_id)
            value: JSON-serializable value
            category: One of CONFIG_CATEGORIES
            description: Optional human description
        """
        if category not in CONFIG_CATEGORIES:
            raise ValueError(f"Unknown configuration category: {category}")

        async with self.session_factory.begin() as session:
            entry = await session.get(ConfigEntry, key)
            if entry:
                entry.value = value
                entry.category = category
                entry.updated_at = utcnow()
                if description is not None:
                    entry.description = description
            else:
                session.add(
                    ConfigEntry(
                        key=key,
                        value=value,
                        category=category,
                        description=description,
                    )
                )

    async def delete(self, key: str) -> bool:
        async with self.session_factory.begin() as session:
            result = await session.execute(delete(ConfigEntry).where(ConfigEntry.key == key))
            return result.rowcount > 0

    async def list(self, category: str | None = None) -> dict[str, Any]:
        """Return all values, optionally restricted to one category."""
        async with self.session_factory() as session:
            stmt = select(ConfigEntry).order_by(ConfigEntry.key)
            if category:
                stmt = stmt.where(ConfigEntry.category == category)
            result = await session.execute(stmt)
            return {entry.key: entry.value for entry in result.scalars().all()}
