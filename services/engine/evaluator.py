from __future__ import annotations
import math
from dataclasses import dataclass

from libs.common.models import (
    Order, LimitBuyOrder, TakeProfitOrder, StopLossOrder, TrailingStopOrder,
)


@dataclass
class Decision:
    triggered: bool = False
    reason: str = ""
    new_peak: float | None = None  # renseigné quand un trailing stop fait un nouveau plus-haut


def trailing_threshold(peak: float, trail_percent: float) -> float:
    return peak * (1.0 - trail_percent / 100.0)


def evaluate(order: Order, price: float) -> Decision:
    """
    Décide si l'ordre se déclenche au prix `price` (en SOL).

    Seul effet de bord : le plus-haut d'un trailing stop est mis à jour sur l'ordre
    AVANT le test de déclenchement (un nouveau plus-haut ne peut donc jamais déclencher).
    Un prix invalide ne déclenche jamais.
    """
    if price is None or not math.isfinite(price) or price <= 0:
        return Decision()

    if isinstance(order, LimitBuyOrder):
        if price <= order.target_price:
            return Decision(True, f"price {price} <= target {order.target_price}")
        return Decision()

    if isinstance(order, TakeProfitOrder):
        target = order.entry_price * order.target_multiplier
        if price >= target:
            return Decision(True, f"price {price} >= {order.target_multiplier}x ({target})")
        return Decision()

    if isinstance(order, StopLossOrder):
        if price <= order.target_price:
            return Decision(True, f"price {price} <= stop {order.target_price}")
        return Decision()

    if isinstance(order, TrailingStopOrder):
        new_peak = None
        if order.peak_price is None or price > order.peak_price:
            order.peak_price = price
            new_peak = price
        threshold = trailing_threshold(order.peak_price, order.trail_percent)
        if price <= threshold:
            return Decision(
                True,
                f"peak {order.peak_price} dropped {order.trail_percent}% to {price} (<= {threshold})",
                new_peak,
            )
        return Decision(False, "", new_peak)

    return Decision()
