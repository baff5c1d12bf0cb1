from __future__ import annotations
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from libs.common.models import Order
from services.engine.price_feed import PriceFeed

log = logging.getLogger(__name__)


class OrderBook:
    """
    Ordres actifs du process, indexés par token.

    Toutes les mutations (add/remove/sync) passent par le même lock, et c'est là que se
    fait la transition watch/unwatch du feed : un token est surveillé tant qu'au moins un
    ordre actif le référence. Les lectures (for_token) renvoient une copie.
    """

    def __init__(self, feed: PriceFeed):
        self.feed = feed
        self._orders: Dict[str, Order] = {}
        self._by_token: Dict[str, Dict[str, Order]] = {}
        # ordres résolus par ce process : jamais ré-ajoutés, même par un snapshot antérieur
        self._retired: Set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def ids(self) -> List[str]:
        return list(self._orders)

    def tokens(self) -> List[str]:
        return list(self._by_token)

    def for_token(self, token: str) -> List[Order]:
        return list((self._by_token.get(token) or {}).values())

    # ---------- mutations (lock tenu) ----------
    def _add(self, order: Order) -> bool:
        if order.id in self._orders or order.id in self._retired:
            return False
        self._orders[order.id] = order
        self._by_token.setdefault(order.token_address, {})[order.id] = order
        self.feed.watch(order.token_address)
        return True

    def _remove(self, order_id: str) -> Optional[Order]:
        order = self._orders.pop(order_id, None)
        if order is None:
            return None
        bucket = self._by_token.get(order.token_address)
        if bucket is not None:
            bucket.pop(order_id, None)
            if not bucket:
                del self._by_token[order.token_address]
                self.feed.unwatch(order.token_address)
        return order

    async def add(self, order: Order) -> bool:
        async with self._lock:
            added = self._add(order)
        if added:
            log.info("+ %s | %s SOL", order.short(), order.amount_sol)
        return added

    async def remove(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._remove(order_id)

    async def retire(self, order_id: str) -> Optional[Order]:
        """Retrait définitif après une issue terminale écrite par ce process."""
        async with self._lock:
            self._retired.add(order_id)
            return self._remove(order_id)

    def is_retired(self, order_id: str) -> bool:
        return order_id in self._retired

    async def sync(self, fresh: Iterable[Order]) -> Tuple[List[str], List[str]]:
        """
        Fusion avec l'ensemble actif du store : ajoute les nouveaux, retire ceux qui n'y
        sont plus. Les ordres déjà connus gardent leur objet en mémoire (plus-haut courant).
        Un snapshot lu avant une issue terminale ne ressuscite pas l'ordre retiré.
        """
        fresh = list(fresh)
        async with self._lock:
            # un id retiré absent du snapshot n'a plus besoin d'être retenu
            self._retired &= {o.id for o in fresh}
            added = [o.id for o in fresh if self._add(o)]
            keep = {o.id for o in fresh}
            removed = [oid for oid in list(self._orders) if oid not in keep]
            for oid in removed:
                self._remove(oid)
        return added, removed
