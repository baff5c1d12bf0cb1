from __future__ import annotations

import asyncio
import json

import pytest

from fakes import TOKEN, TOKEN_B
from services.engine.price_feed import PriceFeed
from services.engine.push_feed import PushPriceSource


class _Stop(BaseException):
    pass


class FakeWs:
    """Connexion scriptée : renvoie `messages` puis coupe."""

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def recv(self):
        if self.messages:
            return self.messages.pop(0)
        raise ConnectionError("closed by peer")


def notification(token, price, symbol="TKN"):
    return json.dumps({"jsonrpc": "2.0", "method": "priceNotification",
                       "params": {"token": token, "price": price, "symbol": symbol}})


def scripted_connect(outcomes):
    """Chaque élément : une Exception levée à la connexion, ou un FakeWs."""
    calls = []

    def connect(url, **kw):
        calls.append(url)
        out = outcomes.pop(0) if outcomes else ConnectionRefusedError("down")
        if isinstance(out, BaseException):
            raise out
        return out

    return connect, calls


def stop_after(n, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)
        if len(sleeps) >= n:
            raise _Stop()
    return fake_sleep


def test_parse_notification():
    src = PushPriceSource("wss://push.test", PriceFeed("http://unused"))
    obs = src.parse(notification(TOKEN, 0.25))
    assert obs.token == TOKEN and obs.price == 0.25 and obs.symbol == "TKN"
    assert src.parse("not json") is None
    assert src.parse(json.dumps({"jsonrpc": "2.0", "id": 1, "result": 7})) is None
    assert src.parse(notification(TOKEN, 0)) is None
    assert src.parse(notification(TOKEN, "abc")) is None


def test_reconnect_backoff_doubles_up_to_ceiling():
    src = PushPriceSource("wss://push.test", PriceFeed("http://unused"), min_delay_s=1, max_delay_s=30)
    connect, calls = scripted_connect([])
    src._connect = connect
    sleeps = []
    src._sleep = stop_after(7, sleeps)

    with pytest.raises(_Stop):
        asyncio.run(src.run())

    assert sleeps == [1, 2, 4, 8, 16, 30, 30]
    assert src.reconnects == 7
    assert not src.connected


def test_backoff_resets_to_floor_after_successful_connect():
    feed = PriceFeed("http://unused")
    src = PushPriceSource("wss://push.test", feed, min_delay_s=1, max_delay_s=30)
    connect, _ = scripted_connect([ConnectionRefusedError(), ConnectionRefusedError(), FakeWs()])
    src._connect = connect
    sleeps = []
    src._sleep = stop_after(4, sleeps)

    with pytest.raises(_Stop):
        asyncio.run(src.run())

    # 1, 2, puis connexion réussie (coupée) -> retour au plancher
    assert sleeps == [1, 2, 1, 2]


def test_notifications_feed_the_price_feed_and_subscriptions_follow_watch_set():
    feed = PriceFeed("http://unused")
    feed.watch(TOKEN)
    seen = []

    async def listener(obs):
        seen.append((obs.token, obs.price))

    feed.subscribe(listener)
    ws = FakeWs([notification(TOKEN, 1.0), notification(TOKEN, 1.0), notification(TOKEN, 1.2),
                 notification(TOKEN_B, 9.0)])
    src = PushPriceSource("wss://push.test", feed)
    connect, _ = scripted_connect([ws])
    src._connect = connect
    src._sleep = stop_after(1, [])

    with pytest.raises(_Stop):
        asyncio.run(src.run())

    # TOKEN_B n'est pas surveillé : ignoré
    assert seen == [(TOKEN, 1.0), (TOKEN, 1.2)]
    assert feed.current_price(TOKEN).price == 1.2
    assert feed.current_price(TOKEN_B) is None
    subs = [m for m in ws.sent if m["method"] == "priceSubscribe"]
    assert [m["params"] for m in subs] == [[TOKEN]]


def test_invalid_delays_rejected():
    with pytest.raises(ValueError):
        PushPriceSource("wss://push.test", PriceFeed("http://unused"), min_delay_s=5, max_delay_s=1)
