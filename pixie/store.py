from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Protocol, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

META_PREFIX = "meta:"
EVENTS_PREFIX = "events:"


def meta_key(pixel_id: str) -> str:
    return f"{META_PREFIX}{pixel_id}"


def event_key_prefix(pixel_id: str) -> str:
    return f"{EVENTS_PREFIX}{pixel_id}:"


def event_key(pixel_id: str, ts_ms: int, tiebreak: str) -> str:
    # zero-padded so keys sort lexicographically in time order
    return f"{event_key_prefix(pixel_id)}{ts_ms:013d}-{tiebreak}"


@dataclass
class ListResult:
    keys: List[str] = field(default_factory=list)
    complete: bool = True


class KVStore(Protocol):
    """Eventually-consistent string store. No multi-key transactions."""

    async def get(self, key: str, format: Literal["text", "json"] = "text") -> Optional[Union[str, dict]]: ...

    async def get_many(self, keys: List[str], format: Literal["text", "json"] = "text") -> List[Optional[Union[str, dict]]]: ...

    async def put(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str, limit: int = 1000) -> ListResult: ...

    async def ping(self) -> bool: ...


def _decode(raw: Optional[str], format: str):
    if raw is None:
        return None
    if format == "json":
        return json.loads(raw)
    if format == "text":
        return raw
    raise ValueError(f"unsupported format: {format}")


class MemoryStore:
    """In-process store for tests and local runs."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key, format="text"):
        return _decode(self._data.get(key), format)

    async def get_many(self, keys, format="text"):
        return [_decode(self._data.get(k), format) for k in keys]

    async def put(self, key, value):
        self._data[key] = value

    async def delete(self, key):
        self._data.pop(key, None)

    async def list(self, prefix, limit=1000):
        names = sorted(k for k in self._data if k.startswith(prefix))
        return ListResult(keys=names[:limit], complete=len(names) <= limit)

    async def ping(self):
        return True

    def __len__(self):
        return len(self._data)


_GLOB_SPECIALS = re.compile(r"([\\*?\[\]])")


class RedisStore:
    def __init__(self, client: redis.Redis):
        self.r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key, format="text"):
        return _decode(await self.r.get(key), format)

    async def get_many(self, keys, format="text"):
        # one MGET round trip instead of a connection per key
        if not keys:
            return []
        return [_decode(raw, format) for raw in await self.r.mget(keys)]

    async def put(self, key, value):
        await self.r.set(key, value)

    async def delete(self, key):
        await self.r.delete(key)

    async def list(self, prefix, limit=1000):
        match = _GLOB_SPECIALS.sub(r"\\\1", prefix) + "*"
        keys: List[str] = []
        complete = True
        # SCAN may return duplicates across cursor steps
        seen = set()
        async for key in self.r.scan_iter(match=match, count=limit):
            if key in seen:
                continue
            if len(keys) >= limit:
                complete = False
                break
            seen.add(key)
            keys.append(key)
        return ListResult(keys=sorted(keys), complete=complete)

    async def ping(self):
        try:
            return bool(await self.r.ping())
        except RedisError:
            return False

    async def close(self):
        await self.r.aclose()


def build_store(settings) -> KVStore:
    if settings.store_backend == "memory":
        return MemoryStore()
    return RedisStore.from_url(settings.redis_url)
