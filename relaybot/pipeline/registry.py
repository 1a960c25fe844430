"""BotRegistry: one initialized BotOrchestrator per deployment key."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Callable

from loguru import logger

from relaybot.core.config.schema import Config
from relaybot.memory.store import MemoryStore
from relaybot.pipeline.orchestrator import BotOrchestrator

OrchestratorFactory = Callable[[str], BotOrchestrator]


class BotRegistry:
    """Lazily creates and caches orchestrators.

    Creation is serialized per key, so concurrent first requests for the
    same deployment build exactly one instance while other deployments
    are not blocked.  A failed initialization is evicted and re-raised.
    """

    def __init__(self, config: Config, db: MemoryStore, factory: OrchestratorFactory | None = None):
        self.config = config
        self.db = db
        self.factory = factory or (lambda key: BotOrchestrator(key, config, db))
        self._instances: dict[str, BotOrchestrator] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __contains__(self, key: str) -> bool:
        return key in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    @property
    def keys(self) -> list[str]:
        return list(self._instances)

    def get(self, key: str) -> BotOrchestrator | None:
        return self._instances.get(key)

    async def get_or_create(self, key: str) -> BotOrchestrator:
        instance = self._instances.get(key)
        if instance is not None and instance.ready:
            return instance

        async with self._locks[key]:
            instance = self._instances.get(key)
            if instance is None:
                instance = self.factory(key)
                self._instances[key] = instance
                logger.info(f"Bot instance created: {key}")
            elif instance.ready:
                return instance
            try:
                await instance.initialize()
            except Exception:
                if self._instances.get(key) is instance:
                    del self._instances[key]
                logger.error(f"Bot instance {key} evicted after failed initialization")
                raise
        return instance

    async def stop(self, key: str) -> bool:
        async with self._locks[key]:
            instance = self._instances.pop(key, None)
            if instance is None:
                return False
            await instance.stop()
        self._locks.pop(key, None)
        return True

    async def stop_all(self) -> None:
        for key in list(self._instances):
            await self.stop(key)
        logger.info("All bot instances stopped")
