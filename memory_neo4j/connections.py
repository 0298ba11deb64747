"""Neo4j connection management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession

logger = logging.getLogger(__name__)


class Neo4jConnection:
    """Neo4j graph database connection manager."""

    def __init__(self, uri: str, username: str, password: str):
        self.uri = uri
        self._auth = (username, password)
        self._driver: Optional[AsyncDriver] = None

    @property
    def is_open(self) -> bool:
        return self._driver is not None

    def get_driver(self) -> AsyncDriver:
        """Get or create the driver instance."""
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(self.uri, auth=self._auth)
        return self._driver

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Short-lived session, closed on every exit path."""
        session = self.get_driver().session()
        try:
            yield session
        finally:
            await session.close()

    async def close(self) -> None:
        """Close the driver connection."""
        if self._driver:
            await self._driver.close()
            self._driver = None
            logger.info(f"Neo4j connection to {self.uri} closed")
