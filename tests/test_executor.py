from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from fakes import TOKEN, WALLET, make_row
from libs.common.models import parse_order
from services.engine.config import SOL_MINT
from services.engine.errors import ExternalServiceError, NoBalanceError
from services.engine.executor import SwapExecutor, pct_to_bps, route_labels, sol_to_lamports

FEE_WALLET = "FeeWa11et111111111111111111111111111111111"

QUOTE = {
    "inAmount": "2500000000",
    "outAmount": "123456789",
    "priceImpactPct": "0.12",
    "routePlan": [{"swapInfo": {"label": "Raydium"}}, {"swapInfo": {"label": "Orca"}}],
}


class JupApi:
    def __init__(self, balance=None, quote=None, swap_status=200, swap_body=None):
        self.balance = balance
        self.quote = quote or QUOTE
        self.swap_status = swap_status
        self.swap_body = swap_body
        self.quotes = []
        self.swaps = []
        self.rpc = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "rpc.test":
            body = json.loads(request.content)
            self.rpc.append(body)
            value = []
            if self.balance is not None:
                value = [{"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": str(self.balance)}}}}}}]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"value": value}})
        if request.url.path.endswith("/quote"):
            self.quotes.append(dict(request.url.params))
            return httpx.Response(200, json=self.quote)
        self.swaps.append(json.loads(request.content))
        body = self.swap_body if self.swap_body is not None else {"swapTransaction": "AQIDBA=="}
        return httpx.Response(self.swap_status, json=body)


def make_executor(api: JupApi, fee_wallet=FEE_WALLET) -> SwapExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return SwapExecutor("https://jup.test/v6/quote", "https://jup.test/v6/swap", "https://rpc.test",
                        fee_wallet=fee_wallet, platform_fee_bps=50, client=client)


def test_unit_helpers():
    assert sol_to_lamports(0.5) == 500_000_000
    assert pct_to_bps(5) == 500
    assert pct_to_bps(0.5) == 50
    assert route_labels(QUOTE) == ["Raydium", "Orca"]
    assert route_labels({}) == []


def test_buy_quotes_amount_in_lamports_with_fee():
    api = JupApi()
    ex = make_executor(api)
    order = parse_order(make_row("limit_buy", target_price=0.01, amount_sol=2.5, slippage=3))

    swap = asyncio.run(ex.build(order))

    (q,) = api.quotes
    assert q["inputMint"] == SOL_MINT and q["outputMint"] == TOKEN
    assert q["amount"] == "2500000000"
    assert q["slippageBps"] == "300"
    assert q["platformFeeBps"] == "50"
    (s,) = api.swaps
    assert s["userPublicKey"] == WALLET
    assert s["feeAccount"] == FEE_WALLET
    assert s["quoteResponse"]["outAmount"] == "123456789"
    assert api.rpc == []
    assert swap.side == "buy"
    assert swap.swap_transaction == "AQIDBA=="
    assert swap.fee_sol == pytest.approx(0.0125)
    assert swap.out_amount == 123456789
    assert swap.route_plan == ["Raydium", "Orca"]
    assert swap.price_impact == pytest.approx(0.12)


def test_no_fee_wallet_means_no_fee():
    api = JupApi()
    ex = make_executor(api, fee_wallet=None)
    order = parse_order(make_row("limit_buy", target_price=0.01, amount_sol=1.0))

    swap = asyncio.run(ex.build(order))

    assert "platformFeeBps" not in api.quotes[0]
    assert "feeAccount" not in api.swaps[0]
    assert swap.fee_sol == 0


def test_sell_quotes_full_balance():
    api = JupApi(balance=987654)
    ex = make_executor(api)
    order = parse_order(make_row("stop_loss", target_price=0.01))

    swap = asyncio.run(ex.build(order))

    (rpc,) = api.rpc
    assert rpc["method"] == "getTokenAccountsByOwner"
    assert rpc["params"][0] == WALLET
    assert rpc["params"][1] == {"mint": TOKEN}
    (q,) = api.quotes
    assert q["inputMint"] == TOKEN and q["outputMint"] == SOL_MINT
    assert q["amount"] == "987654"
    assert q["slippageBps"] == "500"
    assert swap.side == "sell"
    assert swap.out_sol == pytest.approx(0.123456789)
    assert swap.fee_sol == pytest.approx(0.123456789 * 0.005)


def test_sell_without_balance_is_terminal():
    api = JupApi(balance=0)
    ex = make_executor(api)
    order = parse_order(make_row("trailing_stop", trail_percent=10))

    with pytest.raises(NoBalanceError) as e:
        asyncio.run(ex.build(order))
    assert str(e.value) == "no_token_balance"
    assert api.quotes == []


def test_swap_http_error_is_retryable():
    api = JupApi(swap_status=500, swap_body={"message": "internal"})
    ex = make_executor(api)
    order = parse_order(make_row("limit_buy", target_price=0.01))

    with pytest.raises(ExternalServiceError) as e:
        asyncio.run(ex.build(order))
    assert e.value.status_code == 500
    assert not isinstance(e.value, NoBalanceError)


def test_error_field_in_body_is_an_error():
    api = JupApi(quote={"error": "Could not find any route"})
    ex = make_executor(api)
    order = parse_order(make_row("limit_buy", target_price=0.01))

    with pytest.raises(ExternalServiceError, match="Could not find any route"):
        asyncio.run(ex.build(order))
    assert api.swaps == []


def test_missing_swap_transaction():
    api = JupApi(swap_body={"lastValidBlockHeight": 1})
    ex = make_executor(api)
    order = parse_order(make_row("limit_buy", target_price=0.01))

    with pytest.raises(ExternalServiceError, match="missing swapTransaction"):
        asyncio.run(ex.build(order))
