"""Memory index migration status.

One :class:`MigrationStatusCache` is constructed at startup and shared by the
chat service and whatever job migrates the memory index. The first call to
:meth:`MigrationStatusCache.status` checks the index lazily; later calls
return the cached value until :meth:`refresh` or :meth:`set_status` is used.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from .interfaces import MemoryProvider


class MigrationStatus(str, Enum):
    UNKNOWN = "unknown"
    NONE = "none"
    REQUIRED = "required"
    MIGRATING = "migrating"


class MigrationStatusCache:
    def __init__(self, memory_provider: MemoryProvider, index_name: str):
        self._memory_provider = memory_provider
        self._index_name = index_name
        self._status = MigrationStatus.UNKNOWN

    @property
    def cached_status(self) -> MigrationStatus:
        return self._status

    async def status(self) -> MigrationStatus:
        if self._status == MigrationStatus.UNKNOWN:
            return await self.refresh()
        return self._status

    async def refresh(self) -> MigrationStatus:
        """Re-check the index; an ongoing migration is never overridden."""
        if self._status == MigrationStatus.MIGRATING:
            return self._status

        indexes = await self._memory_provider.list_indexes()
        # An empty provider has nothing to migrate
        if not indexes or self._index_name in indexes:
            self._status = MigrationStatus.NONE
        else:
            self._status = MigrationStatus.REQUIRED
        logger.info(f"Memory index '{self._index_name}' migration status: {self._status.value}")
        return self._status

    def set_status(self, status: MigrationStatus) -> None:
        logger.info(f"Memory migration status changed: {self._status.value} -> {status.value}")
        self._status = status
