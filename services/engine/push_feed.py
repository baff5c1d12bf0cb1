from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Set

import websockets

from libs.common.models import PriceObservation
from services.engine.price_feed import PriceFeed, now_ms

log = logging.getLogger(__name__)


class PushPriceSource:
    """
    Source push optionnelle (WebSocket JSON-RPC) qui alimente le même PriceFeed.

    Protocole : `priceSubscribe` / `priceUnsubscribe` avec le token en paramètre,
    notifications `priceNotification` {token, price, symbol}. Reconnexion avec backoff
    exponentiel entre min_delay_s et max_delay_s, remis au plancher à chaque connexion réussie.
    """

    def __init__(self, url: str, feed: PriceFeed, min_delay_s: float = 1.0, max_delay_s: float = 30.0,
                 connect: Callable[..., Any] = websockets.connect, sync_every_s: float = 1.0):
        if min_delay_s <= 0 or max_delay_s < min_delay_s:
            raise ValueError("need 0 < min_delay_s <= max_delay_s")
        self.url = url
        self.feed = feed
        self.min_delay_s = float(min_delay_s)
        self.max_delay_s = float(max_delay_s)
        self.delay_s = self.min_delay_s
        self.sync_every_s = sync_every_s
        self.connected = False
        self.reconnects = 0
        self._connect = connect
        self._sleep = asyncio.sleep
        self._subscribed: Set[str] = set()
        self._req_id = 0
        self._task: Optional[asyncio.Task] = None

    def next_delay(self) -> float:
        """Délai à attendre maintenant ; double le suivant, borné par le plafond."""
        delay = self.delay_s
        self.delay_s = min(self.delay_s * 2.0, self.max_delay_s)
        return delay

    def _rpc(self, method: str, token: str) -> str:
        self._req_id += 1
        return json.dumps({"jsonrpc": "2.0", "id": self._req_id, "method": method, "params": [token]})

    async def _sync_subscriptions(self, ws) -> None:
        wanted = set(self.feed.watching)
        for token in wanted - self._subscribed:
            await ws.send(self._rpc("priceSubscribe", token))
        for token in self._subscribed - wanted:
            await ws.send(self._rpc("priceUnsubscribe", token))
        self._subscribed = wanted

    def parse(self, raw: str | bytes) -> Optional[PriceObservation]:
        try:
            msg: Dict[str, Any] = json.loads(raw)
        except ValueError:
            return None
        if msg.get("method") != "priceNotification":
            return None
        p = msg.get("params") or {}
        token = p.get("token")
        try:
            px = float(p.get("price"))
        except (TypeError, ValueError):
            return None
        if not token or px <= 0:
            return None
        return PriceObservation(token=token, price=px, symbol=p.get("symbol"), ts=now_ms())

    async def _consume(self, ws) -> None:
        while True:
            await self._sync_subscriptions(ws)
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.sync_every_s)
            except asyncio.TimeoutError:
                continue
            obs = self.parse(raw)
            if obs is not None:
                await self.feed.ingest(obs)

    async def run(self) -> None:
        while True:
            try:
                async with self._connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                    log.info("push feed connected")
                    self.connected = True
                    self.delay_s = self.min_delay_s
                    self._subscribed = set()
                    await self._consume(ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.connected = False
                self.reconnects += 1
                delay = self.next_delay()
                log.warning("push feed disconnected (%s), reconnecting in %.1fs", e, delay)
                await self._sleep(delay)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.connected = False
