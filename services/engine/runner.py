from __future__ import annotations
import asyncio
import logging
import signal
from typing import List

from libs.common.log import setup_logging
from libs.common.models import PriceObservation
from services.engine.config import EngineConfig, load_config
from services.engine.dispatcher import Dispatcher
from services.engine.events import EventBus
from services.engine.executor import SwapExecutor
from services.engine.notify import OpsNotifier
from services.engine.price_feed import PriceFeed
from services.engine.push_feed import PushPriceSource
from services.engine.store import OrderStore

log = logging.getLogger(__name__)


class Engine:
    """Assemble feed, book/dispatcher, executor, store et bus ; lance les boucles de fond."""

    def __init__(self, cfg: EngineConfig, store: OrderStore | None = None, bus: EventBus | None = None):
        self.cfg = cfg
        self.store = store or OrderStore(cfg.database_url)
        self.bus = bus or EventBus.from_url(cfg.redis_url)
        self.feed = PriceFeed(cfg.price_api_url, cfg.quote_mint, cfg.price_batch_size,
                              cfg.poll_interval_s, cfg.http_timeout_s)
        self.executor = SwapExecutor.from_config(cfg)
        self.notifier = OpsNotifier(cfg.discord_webhook_url, cfg.telegram_bot_token, cfg.telegram_chat_id,
                                    cfg.http_timeout_s)
        self.dispatcher = Dispatcher(self.store, self.feed, self.executor, self.bus,
                                     max_attempts=cfg.max_attempts, retry_unit_s=cfg.retry_unit_s,
                                     reload_interval_s=cfg.reload_interval_s,
                                     notifier=self.notifier)
        self.push: PushPriceSource | None = None
        if cfg.push_feed_url:
            self.push = PushPriceSource(cfg.push_feed_url, self.feed,
                                        cfg.push_reconnect_min_s, cfg.push_reconnect_max_s)
        self.feed.subscribe(self._cache_price)
        self._tasks: List[asyncio.Task] = []

    async def _cache_price(self, obs: PriceObservation) -> None:
        try:
            await self.bus.cache_price(obs)
        except Exception as e:
            log.debug("price cache write failed: %s", e)

    async def _command_loop(self) -> None:
        while True:
            try:
                async for cmd in self.bus.commands():
                    try:
                        await self.dispatcher.handle_command(cmd)
                    except Exception:
                        log.exception("command %r failed", cmd.get("op"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("command listener error: %s", e)
                await asyncio.sleep(2.0)

    async def _status_loop(self) -> None:
        while True:
            try:
                await self.bus.set_status(self.dispatcher.status())
            except Exception as e:
                log.debug("status publish failed: %s", e)
            await asyncio.sleep(10.0)

    async def start(self) -> None:
        if not await self.store.ping():
            raise RuntimeError("cannot connect to database")
        log.info("database connected")
        await self.store.ensure_orders_table()
        released = await self.store.release_claims()
        if released:
            log.warning("released %d stale execution claims", released)

        await self.dispatcher.start()
        self._tasks.append(self.feed.start())
        if self.push is not None:
            self._tasks.append(self.push.start())
        self._tasks.append(asyncio.create_task(self._command_loop()))
        self._tasks.append(asyncio.create_task(self._status_loop()))
        log.info("engine running, watching %d tokens", len(self.feed.watching))

    async def stop(self) -> None:
        await self.dispatcher.stop()
        if self.push is not None:
            await self.push.stop()
        await self.feed.stop()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.executor.aclose()
        await self.notifier.aclose()
        await self.bus.close()
        await self.store.close()
        log.info("engine stopped")


async def main() -> None:
    cfg = load_config()
    setup_logging(cfg.log_level, cfg.log_json)
    engine = Engine(cfg)
    await engine.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await stop.wait()
    await engine.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
