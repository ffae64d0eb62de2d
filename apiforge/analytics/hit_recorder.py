from __future__ import annotations
import logging
import time
from typing import Any, Dict, List

import msgpack
import redis.asyncio as aioredis

from apiforge.definitions.models import EndpointDefinition

logger = logging.getLogger(__name__)


class RedisHitRecorder:
    """
    Best-effort hit counter and audit log for API endpoints.

    Key schema:
        apiforge:hits:{property}:{route}     → integer counter (INCR)
        apiforge:hitlog:{property}:{route}   → list of MessagePack rows, newest
                                               first, trimmed to MAX_LOG_ROWS

    Row: {"endpoint_id", "ip", "user_agent", "timestamp"}

    record_hit() never raises: a failing Redis must not fail the response.
    """

    KEY_PREFIX = "apiforge"
    MAX_LOG_ROWS = 1000

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    def _count_key(self, property: str, route: str) -> str:
        return f"{self.KEY_PREFIX}:hits:{property}:{route}"

    def _log_key(self, property: str, route: str) -> str:
        return f"{self.KEY_PREFIX}:hitlog:{property}:{route}"

    async def record_hit(
        self, endpoint: EndpointDefinition, ip: str = "unknown", user_agent: str = "unknown"
    ) -> None:
        row = msgpack.packb(
            {
                "endpoint_id": endpoint.id,
                "ip": ip,
                "user_agent": user_agent,
                "timestamp": time.time(),
            },
            use_bin_type=True,
        )
        log_key = self._log_key(endpoint.property, endpoint.route)
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.incr(self._count_key(endpoint.property, endpoint.route))
                pipe.lpush(log_key, row)
                pipe.ltrim(log_key, 0, self.MAX_LOG_ROWS - 1)
                await pipe.execute()
        except Exception as exc:
            logger.warning(
                "Hit recording failed for %s/%s (non-fatal): %s",
                endpoint.property, endpoint.route, exc,
            )

    async def get_stats(self, property: str, route: str, recent: int = 20) -> Dict[str, Any]:
        """Hit count plus the most recent audit rows."""
        raw_count = await self._redis.get(self._count_key(property, route))
        raw_rows = await self._redis.lrange(self._log_key(property, route), 0, max(0, recent - 1))
        rows: List[Dict[str, Any]] = []
        for raw in raw_rows:
            try:
                rows.append(msgpack.unpackb(raw, raw=False))
            except Exception as exc:
                logger.warning("Skipping undecodable hit row for %s/%s: %s", property, route, exc)
        return {
            "property": property,
            "route": route,
            "hits": int(raw_count) if raw_count else 0,
            "recent": rows,
        }

    async def ping(self) -> bool:
        try:
            return await self._redis.ping()
        except Exception:
            return False


class NullHitRecorder:
    """No-op recorder used when Redis is unavailable (local dev without Docker)."""

    async def record_hit(self, *a, **kw) -> None:
        pass

    async def get_stats(self, property: str, route: str, recent: int = 20) -> Dict[str, Any]:
        return {"property": property, "route": route, "hits": 0, "recent": [], "redis": "disabled"}

    async def ping(self) -> bool:
        return False
