from __future__ import annotations
import logging
import math
from typing import Any, Dict, List

import httpx

from libs.common.models import Order, SwapDescriptor
from services.engine.config import EngineConfig, LAMPORTS, SOL_MINT
from services.engine.errors import ExternalServiceError, NoBalanceError

log = logging.getLogger(__name__)


def sol_to_lamports(amount_sol: float) -> int:
    return int(math.floor(float(amount_sol) * LAMPORTS))


def pct_to_bps(pct: float) -> int:
    """Slippage en % -> basis points (5% -> 500)."""
    return int(math.floor(float(pct) * 100))


def route_labels(quote: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for hop in quote.get("routePlan") or []:
        label = (hop.get("swapInfo") or {}).get("label")
        if label:
            out.append(label)
    return out


class SwapExecutor:
    """
    Construit une transaction de swap NON signée via l'API quote/swap.
    Ne signe ni n'envoie rien : le payload part vers le wallet du propriétaire.
    """

    def __init__(self, quote_url: str, swap_url: str, rpc_url: str, fee_wallet: str | None = None,
                 platform_fee_bps: int = 50, default_slippage_pct: float = 5.0, timeout_s: float = 10.0,
                 client: httpx.AsyncClient | None = None):
        self.quote_url = quote_url
        self.swap_url = swap_url
        self.rpc_url = rpc_url
        self.fee_wallet = fee_wallet or None
        self.platform_fee_bps = int(platform_fee_bps)
        self.default_slippage_pct = float(default_slippage_pct)
        self.timeout_s = float(timeout_s)
        self._client = client
        self._owns_client = client is None
        if not self.fee_wallet:
            log.warning("FEE_WALLET not set, platform fees disabled")

    @classmethod
    def from_config(cls, cfg: EngineConfig, client: httpx.AsyncClient | None = None) -> "SwapExecutor":
        return cls(cfg.quote_api_url, cfg.swap_api_url, cfg.solana_rpc, cfg.fee_wallet,
                   cfg.platform_fee_bps, cfg.default_slippage_pct, cfg.http_timeout_s, client)

    @property
    def fee_bps(self) -> int:
        # pas de destinataire -> pas de frais du tout
        return self.platform_fee_bps if self.fee_wallet else 0

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _slippage_bps(self, order: Order) -> int:
        pct = order.slippage if order.slippage else self.default_slippage_pct
        return pct_to_bps(pct)

    async def _call(self, service: str, method: str, url: str, **kw) -> Dict[str, Any]:
        try:
            resp = await self._http().request(method, url, timeout=self.timeout_s, **kw)
        except httpx.HTTPError as e:
            raise ExternalServiceError(service, repr(e)) from e
        if resp.status_code >= 400:
            raise ExternalServiceError(service, resp.text[:300], resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ExternalServiceError(service, "invalid json") from e
        if isinstance(data, dict) and data.get("error"):
            raise ExternalServiceError(service, str(data["error"]))
        return data

    # ---------- quote / swap ----------
    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
            "onlyDirectRoutes": "false",
            "asLegacyTransaction": "false",
        }
        if self.fee_bps:
            params["platformFeeBps"] = str(self.fee_bps)
        return await self._call("quote", "GET", self.quote_url, params=params)

    async def build_swap_transaction(self, quote: Dict[str, Any], user_pubkey: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "quoteResponse": quote,
            "userPublicKey": user_pubkey,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        if self.fee_wallet:
            body["feeAccount"] = self.fee_wallet
        swap = await self._call("swap", "POST", self.swap_url, json=body)
        if not swap.get("swapTransaction"):
            raise ExternalServiceError("swap", "missing swapTransaction")
        return swap

    # ---------- balances ----------
    async def get_token_balance(self, wallet: str, token_mint: str) -> int:
        """Solde du token (plus petite unité) sur le premier compte du propriétaire, 0 si aucun."""
        payload = {
            "jsonrpc": "2.0", "id": 1,
            "method": "getTokenAccountsByOwner",
            "params": [wallet, {"mint": token_mint}, {"encoding": "jsonParsed"}],
        }
        data = await self._call("rpc", "POST", self.rpc_url, json=payload)
        accounts = (data.get("result") or {}).get("value") or []
        if not accounts:
            return 0
        try:
            info = accounts[0]["account"]["data"]["parsed"]["info"]
            return int(info["tokenAmount"]["amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalServiceError("rpc", f"unexpected token account layout: {e!r}") from e

    # ---------- buy / sell ----------
    async def build_buy(self, order: Order) -> SwapDescriptor:
        """SOL -> token pour amount_sol."""
        lamports = sol_to_lamports(order.amount_sol)
        log.info("buy quote: %s SOL -> %s...", order.amount_sol, order.token_address[:8])
        quote = await self.get_quote(SOL_MINT, order.token_address, lamports, self._slippage_bps(order))
        swap = await self.build_swap_transaction(quote, order.wallet)

        out_amount = int(quote.get("outAmount") or 0)
        fee_sol = float(order.amount_sol) * self.fee_bps / 10_000
        log.info("buy ready: %s SOL -> %d tokens | fee %s SOL", order.amount_sol, out_amount, fee_sol)
        return SwapDescriptor(
            side="buy",
            quote=quote,
            swap_transaction=swap["swapTransaction"],
            input_mint=SOL_MINT,
            output_mint=order.token_address,
            in_amount=lamports,
            out_amount=out_amount,
            price_impact=float(quote.get("priceImpactPct") or 0),
            fee_sol=fee_sol,
            route_plan=route_labels(quote),
        )

    async def build_sell(self, order: Order) -> SwapDescriptor:
        """Token -> SOL pour TOUT le solde on-chain (l'ordre veut dire « ferme ma position »)."""
        balance = await self.get_token_balance(order.wallet, order.token_address)
        if balance <= 0:
            raise NoBalanceError()
        log.info("sell quote: %d of %s... -> SOL", balance, order.token_address[:8])
        quote = await self.get_quote(order.token_address, SOL_MINT, balance, self._slippage_bps(order))
        swap = await self.build_swap_transaction(quote, order.wallet)

        out_amount = int(quote.get("outAmount") or 0)
        out_sol = out_amount / LAMPORTS
        fee_sol = out_sol * self.fee_bps / 10_000
        log.info("sell ready: tokens -> %s SOL | fee %s SOL", out_sol, fee_sol)
        return SwapDescriptor(
            side="sell",
            quote=quote,
            swap_transaction=swap["swapTransaction"],
            input_mint=order.token_address,
            output_mint=SOL_MINT,
            in_amount=int(quote.get("inAmount") or balance),
            out_amount=out_amount,
            out_sol=out_sol,
            price_impact=float(quote.get("priceImpactPct") or 0),
            fee_sol=fee_sol,
            route_plan=route_labels(quote),
        )

    async def build(self, order: Order) -> SwapDescriptor:
        return await self.build_buy(order) if order.is_buy else await self.build_sell(order)
