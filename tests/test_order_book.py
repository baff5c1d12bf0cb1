from __future__ import annotations

import asyncio

from fakes import TOKEN, TOKEN_B, make_row
from libs.common.models import parse_order
from services.engine.order_book import OrderBook
from services.engine.price_feed import PriceFeed


def order(order_type="stop_loss", **kw):
    kw.setdefault("target_price", 1.0)
    return parse_order(make_row(order_type, **kw))


def test_add_is_idempotent_and_watches_token():
    feed = PriceFeed("http://unused")
    book = OrderBook(feed)
    o = order()

    async def scenario():
        assert await book.add(o) is True
        assert await book.add(o) is False

    asyncio.run(scenario())
    assert len(book) == 1
    assert o.id in book
    assert feed.is_watching(TOKEN)


def test_token_stays_watched_until_last_order_leaves():
    feed = PriceFeed("http://unused")
    book = OrderBook(feed)
    a, b = order(), order()
    c = order(token_address=TOKEN_B)

    async def scenario():
        for o in (a, b, c):
            await book.add(o)
        await book.remove(a.id)
        assert feed.is_watching(TOKEN)
        await book.remove(b.id)
        assert not feed.is_watching(TOKEN)
        assert feed.is_watching(TOKEN_B)
        assert await book.remove(b.id) is None

    asyncio.run(scenario())
    assert book.tokens() == [TOKEN_B]


def test_sync_adds_new_removes_missing_and_keeps_live_objects():
    feed = PriceFeed("http://unused")
    book = OrderBook(feed)
    kept = order("trailing_stop", target_price=None, trail_percent=10)
    gone = order(token_address=TOKEN_B)
    new = order()

    async def scenario():
        await book.add(kept)
        await book.add(gone)
        kept.peak_price = 3.0
        # le store renvoie une copie fraîche de `kept` avec un plus-haut plus ancien
        stale = parse_order(make_row("trailing_stop", id=kept.id, trail_percent=10, peak_price=2.0))
        return await book.sync([stale, new])

    added, removed = asyncio.run(scenario())
    assert added == [new.id]
    assert removed == [gone.id]
    assert book.get(kept.id) is kept
    assert book.get(kept.id).peak_price == 3.0
    assert not feed.is_watching(TOKEN_B)


def test_for_token_returns_a_snapshot():
    feed = PriceFeed("http://unused")
    book = OrderBook(feed)
    a, b = order(), order()

    async def scenario():
        await book.add(a)
        await book.add(b)
        snap = book.for_token(TOKEN)
        await book.remove(a.id)
        return snap

    snap = asyncio.run(scenario())
    assert {o.id for o in snap} == {a.id, b.id}
    assert [o.id for o in book.for_token(TOKEN)] == [b.id]
    assert book.for_token("unknown") == []


def test_retired_order_is_not_re_added_by_an_older_snapshot():
    feed = PriceFeed("http://unused")
    book = OrderBook(feed)
    o = order()

    async def scenario():
        await book.add(o)
        snapshot = [parse_order(make_row("stop_loss", id=o.id, target_price=1.0))]
        assert await book.retire(o.id) is o
        assert await book.sync(snapshot) == ([], [])
        assert o.id not in book
        assert await book.add(o) is False
        # le store ne le rapporte plus actif : l'id n'est plus retenu
        await book.sync([])

    asyncio.run(scenario())
    assert not feed.is_watching(TOKEN)
    assert not book.is_retired(o.id)
