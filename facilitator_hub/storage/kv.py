"""
Key-value store for facilitator records
Upstash Redis (REST) in deployments, in-memory for development and tests
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

import structlog
from upstash_redis.asyncio import Redis

logger = structlog.get_logger()


class KeyValueStore(ABC):
    """The subset of Redis semantics the directory relies on"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def sadd(self, set_key: str, member: str) -> None:
        ...

    @abstractmethod
    async def smembers(self, set_key: str) -> List[str]:
        ...

    @abstractmethod
    async def srem(self, set_key: str, member: str) -> None:
        ...

    @abstractmethod
    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        ...

    async def close(self) -> None:
        return None


class UpstashStore(KeyValueStore):
    """
    Upstash Redis over REST.
    Upstash may hand back JSON values already parsed; callers must accept
    both str and dict from get/mget.
    """

    def __init__(self, url: str, token: str):
        if not url or not token:
            raise ValueError(
                "UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set in environment"
            )
        self.client = Redis(url=url, token=token)

    async def get(self, key: str) -> Optional[Any]:
        return await self.client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def sadd(self, set_key: str, member: str) -> None:
        await self.client.sadd(set_key, member)

    async def smembers(self, set_key: str) -> List[str]:
        members = await self.client.smembers(set_key)
        return list(members or [])

    async def srem(self, set_key: str, member: str) -> None:
        await self.client.srem(set_key, member)

    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        if not keys:
            return []
        return list(await self.client.mget(*keys))

    async def close(self) -> None:
        await self.client.close()


class MemoryStore(KeyValueStore):
    """Process-local store with the same semantics, for dev mode and tests"""

    def __init__(self):
        self._values: Dict[str, Any] = {}
        self._sets: Dict[str, Set[str]] = {}

    async def get(self, key: str) -> Optional[Any]:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def sadd(self, set_key: str, member: str) -> None:
        self._sets.setdefault(set_key, set()).add(member)

    async def smembers(self, set_key: str) -> List[str]:
        return sorted(self._sets.get(set_key, set()))

    async def srem(self, set_key: str, member: str) -> None:
        self._sets.get(set_key, set()).discard(member)

    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        return [self._values.get(key) for key in keys]


def create_store(url: str, token: str) -> KeyValueStore:
    """Upstash when credentials are configured, otherwise in-memory"""
    if url and token:
        logger.info("kv_store_selected", backend="upstash")
        return UpstashStore(url, token)
    logger.warning("kv_store_selected", backend="memory", message="Records will not survive a restart")
    return MemoryStore()
