from __future__ import annotations

import asyncio

import httpx

from fakes import TOKEN, TOKEN_B, FakeBus, FakeExecutor, FakeStore, make_row
from services.engine.config import EngineConfig
from services.engine.runner import Engine


async def wait_for(cond, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not cond():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


def test_engine_wires_feed_dispatcher_and_commands():
    stale = make_row("stop_loss", target_price=1.0, executing_at="from-a-dead-process")
    store, bus = FakeStore([stale]), FakeBus()
    cfg = EngineConfig(price_api_url="https://price.test", poll_interval_s=0.01, retry_unit_s=0)

    def prices(request):
        ids = request.url.params["ids"].split(",")
        return httpx.Response(200, json={"data": {t: {"id": t, "price": 0.5} for t in ids}})

    async def scenario():
        engine = Engine(cfg, store=store, bus=bus)
        engine.feed._client = httpx.AsyncClient(transport=httpx.MockTransport(prices))
        engine.dispatcher.executor = FakeExecutor()
        await engine.start()
        try:
            # claim orphelin relâché au démarrage, puis déclenchement au premier poll
            await wait_for(lambda: store.status(stale["id"]) == "filled")
            assert bus.prices[TOKEN].price == 0.5

            await wait_for(lambda: bus.inbox is not None)
            fresh = make_row("limit_buy", target_price=0.1, token_address=TOKEN_B)
            store.add_row(fresh)
            bus.inbox.put_nowait({"op": "add", "order": fresh})
            await wait_for(lambda: fresh["id"] in engine.dispatcher.book)
            assert engine.feed.is_watching(TOKEN_B)
            await wait_for(lambda: bus.status is not None)
            assert bus.status["running"] is True
        finally:
            await engine.stop()
        return engine

    engine = asyncio.run(scenario())
    assert bus.closed
    assert len(bus.of_type("order_triggered")) == 1
    assert not engine.dispatcher.running
