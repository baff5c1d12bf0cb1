from __future__ import annotations
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from libs.common.models import PriceObservation
from services.engine.config import SOL_MINT
from services.engine.errors import ExternalServiceError

log = logging.getLogger(__name__)

PriceListener = Callable[[PriceObservation], Awaitable[None]]


def now_ms() -> int: return int(time.time() * 1000)


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class PriceFeed:
    """
    Prix des tokens surveillés (en SOL), via polling batché de l'API de prix.

    - watch/unwatch idempotents (pas de comptage de références ici : c'est l'OrderBook
      qui décide quand un token n'a plus d'ordre)
    - un event par token et par cycle quand le prix change, ET à la première observation
      (un ordre fraîchement créé est évalué tout de suite)
    - un token absent de la réponse est marqué indexed=False au lieu de garder un prix périmé
    - une erreur de fetch est loguée et ignorée : le tick suivant rattrape
    """

    def __init__(self, api_url: str, quote_mint: str = SOL_MINT, batch_size: int = 50,
                 interval_s: float = 3.0, timeout_s: float = 10.0,
                 client: httpx.AsyncClient | None = None):
        self.api_url = api_url
        self.quote_mint = quote_mint
        self.batch_size = max(1, int(batch_size))
        self.interval_s = float(interval_s)
        self.timeout_s = float(timeout_s)
        self.watching: Dict[str, None] = {}  # dict = set ordonné
        self.prices: Dict[str, PriceObservation] = {}
        self._listeners: List[PriceListener] = []
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task | None = None

    # ---------- watch set ----------
    def watch(self, token: str) -> bool:
        if token in self.watching:
            return False
        self.watching[token] = None
        log.info("watching %s... (%d total)", token[:8], len(self.watching))
        return True

    def unwatch(self, token: str) -> bool:
        if token not in self.watching:
            return False
        del self.watching[token]
        # oublier le prix : un re-watch redéclenche la première observation
        self.prices.pop(token, None)
        log.info("unwatched %s... (%d total)", token[:8], len(self.watching))
        return True

    def is_watching(self, token: str) -> bool:
        return token in self.watching

    def current_price(self, token: str) -> Optional[PriceObservation]:
        return self.prices.get(token)

    def subscribe(self, listener: PriceListener) -> None:
        self._listeners.append(listener)

    # ---------- fetch ----------
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._client

    async def fetch_batch(self, tokens: List[str]) -> Dict[str, PriceObservation]:
        """Un appel sortant pour <= batch_size tokens. Les absents reviennent indexed=False."""
        ts = now_ms()
        try:
            resp = await asyncio.wait_for(
                self._http().get(self.api_url, params={"ids": ",".join(tokens), "vsToken": self.quote_mint}),
                timeout=self.timeout_s,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise ExternalServiceError("price api", repr(e)) from e
        if resp.status_code >= 400:
            raise ExternalServiceError("price api", resp.text[:200], resp.status_code)
        try:
            body = resp.json()
        except ValueError as e:
            raise ExternalServiceError("price api", "invalid json") from e
        data = (body.get("data") or {}) if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ExternalServiceError("price api", "unexpected payload")

        out: Dict[str, PriceObservation] = {}
        for token in tokens:
            info = data.get(token)
            px = None
            if isinstance(info, dict):
                try:
                    px = float(info.get("price"))
                except (TypeError, ValueError):
                    px = None
            if px is None or px <= 0:
                out[token] = PriceObservation(token=token, ts=ts, indexed=False)
            else:
                out[token] = PriceObservation(token=token, price=px, symbol=info.get("mintSymbol"), ts=ts)
        return out

    # ---------- observations ----------
    async def ingest(self, obs: PriceObservation) -> None:
        """Point d'entrée commun au polling et au feed push."""
        if obs.token not in self.watching:
            return
        prev = self.prices.get(obs.token)
        self.prices[obs.token] = obs
        if not obs.indexed or obs.price is None:
            return
        if prev is None or not prev.indexed or prev.price != obs.price:
            await self._emit(obs)

    async def _emit(self, obs: PriceObservation) -> None:
        for listener in list(self._listeners):
            try:
                await listener(obs)
            except Exception:
                log.exception("price listener failed for %s...", obs.token[:8])

    async def _poll_batch(self, batch: List[str]) -> None:
        try:
            observations = await self.fetch_batch(batch)
        except ExternalServiceError as e:
            log.warning("price poll failed for %d tokens: %s", len(batch), e)
            return
        for token in batch:
            await self.ingest(observations[token])

    async def poll_once(self) -> None:
        tokens = list(self.watching)
        if not tokens:
            return
        # batches en parallèle : un batch lent ne retarde pas les autres
        await asyncio.gather(*(self._poll_batch(b) for b in chunked(tokens, self.batch_size)))

    # ---------- loop ----------
    async def run(self) -> None:
        log.info("polling mode started (%.1fs interval)", self.interval_s)
        while True:
            try:
                await self.poll_once()
            except Exception:
                log.exception("price poll loop error")
            await asyncio.sleep(self.interval_s)

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
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
