from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from libs.common.models import FillRecord, Order, OrderEvent, PriceObservation, SwapDescriptor, parse_order
from services.engine.evaluator import evaluate
from services.engine.errors import TerminalExecutionError
from services.engine.order_book import OrderBook
from services.engine.price_feed import PriceFeed

log = logging.getLogger(__name__)


class Dispatcher:
    """
    Pipeline tick de prix -> évaluation -> exécution.

    - un seul essai d'exécution en vol par ordre (garde posée avant le premier essai,
      levée seulement sur issue terminale), quel que soit le nombre de ticks reçus
    - jusqu'à max_attempts essais, délai linéaire attempt * retry_unit_s entre deux
    - issue terminale (filled / failed) : écrite au store, ordre retiré du book, event émis
    - rechargement périodique du store : un ordre créé ou annulé ailleurs est vu au plus
      tard après reload_interval_s
    """

    def __init__(self, store, feed: PriceFeed, executor, bus, book: OrderBook | None = None,
                 max_attempts: int = 3, retry_unit_s: float = 1.5, reload_interval_s: float = 30.0,
                 notifier=None):
        self.store = store
        self.feed = feed
        self.executor = executor
        self.bus = bus
        self.notifier = notifier
        self.book = book or OrderBook(feed)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_unit_s = float(retry_unit_s)
        self.reload_interval_s = float(reload_interval_s)
        self.running = False
        self._executing: Set[str] = set()
        self._dirty_peaks: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._reload_task: asyncio.Task | None = None
        self._sleep = asyncio.sleep
        feed.subscribe(self._on_observation)

    # ---------- lifecycle ----------
    async def start(self) -> None:
        await self.reconcile()
        self._reload_task = asyncio.create_task(self._reload_loop())
        self.running = True
        log.info("running, %d orders on %d tokens", len(self.book), len(self.book.tokens()))

    async def stop(self, timeout: float = 30.0) -> None:
        self.running = False
        if self._reload_task is not None:
            self._reload_task.cancel()
            try:
                await self._reload_task
            except asyncio.CancelledError:
                pass
            self._reload_task = None
        # les exécutions en vol vont au bout : leur écriture terminale compte
        await self.drain(timeout)

    async def drain(self, timeout: float | None = None) -> None:
        """Attend les tâches de fond (exécutions, écritures de plus-haut)."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            if timeout is not None:
                break

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def is_executing(self, order_id: str) -> bool:
        return order_id in self._executing

    # ---------- active set ----------
    async def add(self, order: Order) -> bool:
        return await self.book.add(order)

    async def remove(self, order_id: str) -> Optional[Order]:
        return await self.book.remove(order_id)

    async def reconcile(self) -> None:
        rows = await self.store.get_active_orders()
        orders = [o for o in (parse_order(r) for r in rows) if o is not None]
        added, removed = await self.book.sync(orders)
        if added or removed:
            log.info("reconciled: +%d -%d (%d active)", len(added), len(removed), len(self.book))

    async def _reload_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reload_interval_s)
            try:
                await self.reconcile()
            except Exception as e:
                log.error("reload error: %s", e)

    async def handle_command(self, cmd: Dict[str, Any]) -> None:
        """Commandes publiées par le front door : {"op": "add", "order": row} / {"op": "remove", "id": ...}."""
        op = cmd.get("op")
        if op == "add":
            order = parse_order(cmd.get("order") or {})
            if order is not None and order.status == "active":
                await self.add(order)
        elif op == "remove" and cmd.get("id"):
            await self.remove(str(cmd["id"]))
        else:
            log.warning("unknown command %r", op)

    # ---------- ticks ----------
    async def _on_observation(self, obs: PriceObservation) -> None:
        await self.on_price_change(obs.token, obs.price)

    async def on_price_change(self, token: str, price: float | None) -> None:
        if not price or price <= 0:
            return
        for order in self.book.for_token(token):
            try:
                self._evaluate(order, price)
            except Exception:
                log.exception("evaluation failed for %s", order.id[:8])

    def _evaluate(self, order: Order, price: float) -> None:
        if order.id in self._executing:
            return
        decision = evaluate(order, price)
        if decision.new_peak is not None or order.id in self._dirty_peaks:
            self._spawn(self._persist_peak(order))
        if decision.triggered:
            # garde posée de façon synchrone : aucun autre tick ne peut passer avant
            self._executing.add(order.id)
            log.info("MATCH %s | %s", order.short(), decision.reason)
            self._spawn(self._execute(order, price, decision.reason))

    async def _persist_peak(self, order: Order) -> None:
        peak = getattr(order, "peak_price", None)
        if peak is None:
            return
        try:
            await self.store.update_peak(order.id, peak)
            self._dirty_peaks.discard(order.id)
        except Exception as e:
            # réessayé au prochain tick : un restart ne doit pas repartir d'un plus-haut plus bas
            self._dirty_peaks.add(order.id)
            log.warning("peak persist failed for %s: %s", order.id[:8], e)

    # ---------- exécution ----------
    async def _execute(self, order: Order, price: float, reason: str) -> None:
        try:
            try:
                claimed = await self.store.claim_order(order.id)
            except Exception as e:
                # pas d'issue terminale : l'ordre reste actif et sera réévalué
                log.error("claim failed for %s: %s", order.id[:8], e)
                return
            if not claimed:
                log.info("%s no longer active, dropping", order.id[:8])
                await self.book.remove(order.id)
                return

            for attempt in range(1, self.max_attempts + 1):
                log.info("executing %s (attempt %d)", order.id[:8], attempt)
                try:
                    swap = await self.executor.build(order)
                    await self._filled(order, price, reason, swap)
                    return
                except TerminalExecutionError as e:
                    log.warning("%s terminal failure: %s", order.id[:8], e)
                    await self._failed(order, str(e))
                    return
                except Exception as e:
                    log.error("%s attempt %d failed: %s", order.id[:8], attempt, e)
                    if attempt == self.max_attempts:
                        log.error("%s failed permanently", order.id[:8])
                        await self._failed(order, str(e) or type(e).__name__)
                        return
                    await self._sleep(self.retry_unit_s * attempt)
        finally:
            self._executing.discard(order.id)
            self._dirty_peaks.discard(order.id)

    async def _filled(self, order: Order, price: float, reason: str, swap: SwapDescriptor) -> None:
        fill = FillRecord(
            fill_price=price,
            fill_sol=swap.out_sol if swap.out_sol is not None else float(order.amount_sol),
            fee_sol=swap.fee_sol,
        )
        # une erreur ici compte comme un essai raté
        landed = await self.store.fill_order(order.id, fill)
        await self.book.retire(order.id)
        if not landed:
            log.warning("%s was resolved elsewhere, swap discarded", order.id[:8])
            return
        log.info("%s triggered, awaiting wallet signature", order.id[:8])
        await self._emit(OrderEvent(
            type="order_triggered",
            wallet=order.wallet,
            order_id=order.id,
            payload={
                "orderType": order.order_type,
                "token": order.token_address,
                "currentPrice": price,
                "reason": reason,
                "swapTransaction": swap.swap_transaction,
                "feeSol": swap.fee_sol,
                "priceImpact": swap.price_impact,
                "routePlan": swap.route_plan,
                "fillTx": fill.fill_tx,
            },
        ))

    async def _failed(self, order: Order, reason: str) -> None:
        landed: bool | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                landed = await self.store.fail_order(order.id, reason)
                break
            except Exception as e:
                log.error("fail_order write failed for %s (attempt %d): %s", order.id[:8], attempt, e)
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_unit_s * attempt)
        if landed is None:
            # écriture perdue : l'ordre reste actif, on rend le claim pour qu'il reste annulable
            await self._release_claim(order)
            return
        await self.book.retire(order.id)
        if not landed:
            log.warning("%s was resolved elsewhere, failure not recorded", order.id[:8])
            return
        await self._emit(OrderEvent(type="order_failed", wallet=order.wallet, order_id=order.id,
                                    payload={"orderType": order.order_type, "token": order.token_address,
                                             "reason": reason}))
        if self.notifier is not None:
            await self.notifier.notify(f"order {order.id[:8]} failed",
                                       {"type": order.order_type, "token": order.token_address[:8], "reason": reason})

    async def _release_claim(self, order: Order) -> None:
        try:
            await self.store.release_claim(order.id)
            log.warning("%s failure not recorded, claim released (order stays active)", order.id[:8])
        except Exception as e:
            # release_claims au prochain démarrage rattrape
            log.error("claim release failed for %s: %s", order.id[:8], e)

    async def _emit(self, event: OrderEvent) -> None:
        try:
            await self.bus.publish(event)
        except Exception as e:
            log.error("event publish failed (%s %s): %s", event.type, event.order_id[:8], e)

    # ---------- status ----------
    def status(self) -> Dict[str, Any]:
        prices: Dict[str, Optional[float]] = {}
        for token in self.book.tokens():
            obs = self.feed.current_price(token)
            prices[token[:8]] = obs.price if obs else None
        return {
            "running": self.running,
            "orders": len(self.book),
            "tokens": len(self.feed.watching),
            "executing": len(self._executing),
            "prices": prices,
        }

    def executing_ids(self) -> List[str]:
        return list(self._executing)
