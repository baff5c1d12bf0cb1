from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis

from libs.common.models import OrderEvent, PriceObservation

log = logging.getLogger(__name__)

EVENTS_CHANNEL = "orders:events"      # engine/API -> front door (relais WS par wallet)
COMMANDS_CHANNEL = "orders:commands"  # API -> engine (add/remove immédiats)
PRICES_HASH = "last_prices"           # dernier prix connu, lu par l'API
STATUS_KEY = "engine:status"          # expire si l'engine ne publie plus


class EventBus:
    """Pub/sub Redis entre l'engine et le front door."""

    def __init__(self, r: redis.Redis):
        self.r = r

    @classmethod
    def from_url(cls, url: str) -> "EventBus":
        return cls(redis.from_url(url, decode_responses=True))

    async def close(self) -> None:
        await self.r.aclose()

    async def publish(self, event: OrderEvent) -> None:
        await self.r.publish(EVENTS_CHANNEL, event.model_dump_json())

    async def publish_command(self, op: str, **fields: Any) -> None:
        await self.r.publish(COMMANDS_CHANNEL, json.dumps({"op": op, **fields}, default=str))

    async def _listen(self, channel: str) -> AsyncIterator[Dict[str, Any]]:
        pubsub = self.r.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for msg in pubsub.listen():
                if not msg or msg["type"] != "message":
                    continue
                try:
                    yield json.loads(msg["data"])
                except ValueError:
                    log.warning("dropping non-json message on %s", channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    def commands(self) -> AsyncIterator[Dict[str, Any]]:
        return self._listen(COMMANDS_CHANNEL)

    def events(self) -> AsyncIterator[Dict[str, Any]]:
        return self._listen(EVENTS_CHANNEL)

    # ---------- cache prix ----------
    async def cache_price(self, obs: PriceObservation) -> None:
        await self.r.hset(PRICES_HASH, obs.token, obs.model_dump_json())

    async def drop_price(self, token: str) -> None:
        await self.r.hdel(PRICES_HASH, token)

    async def cached_price(self, token: str) -> Optional[PriceObservation]:
        raw = await self.r.hget(PRICES_HASH, token)
        if not raw:
            return None
        try:
            return PriceObservation.model_validate_json(raw)
        except ValueError:
            return None

    # ---------- statut engine ----------
    async def set_status(self, status: Dict[str, Any], ttl_s: int = 30) -> None:
        await self.r.set(STATUS_KEY, json.dumps(status), ex=ttl_s)

    async def get_status(self) -> Optional[Dict[str, Any]]:
        raw = await self.r.get(STATUS_KEY)
        return json.loads(raw) if raw else None
