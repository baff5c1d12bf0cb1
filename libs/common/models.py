from __future__ import annotations
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal, List, Dict, Any, Union, Annotated

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

log = logging.getLogger(__name__)

OrderStatus = Literal["active", "filled", "cancelled", "failed"]
OrderType = Literal["limit_buy", "take_profit", "stop_loss", "trailing_stop"]
ORDER_TYPES = ("limit_buy", "take_profit", "stop_loss", "trailing_stop")

# fill_tx tant que le wallet n'a pas signé
AWAITING_SIGNATURE = "awaiting_signature"


class _OrderBase(BaseModel):
    id: str
    wallet: str
    token_address: str
    token_symbol: Optional[str] = None
    amount_sol: float = Field(gt=0)
    slippage: float = Field(default=5.0, ge=0)
    status: OrderStatus = "active"
    created_at: Optional[datetime] = None

    @property
    def is_buy(self) -> bool:
        return False

    def short(self) -> str:
        return f"{self.id[:8]} {self.order_type} {self.token_address[:8]}..."


class LimitBuyOrder(_OrderBase):
    order_type: Literal["limit_buy"] = "limit_buy"
    target_price: float = Field(gt=0)

    @property
    def is_buy(self) -> bool:
        return True


class TakeProfitOrder(_OrderBase):
    order_type: Literal["take_profit"] = "take_profit"
    entry_price: float = Field(gt=0)
    target_multiplier: float = Field(gt=0)

    @property
    def target_price(self) -> float:
        return self.entry_price * self.target_multiplier


class StopLossOrder(_OrderBase):
    order_type: Literal["stop_loss"] = "stop_loss"
    target_price: float = Field(gt=0)


class TrailingStopOrder(_OrderBase):
    order_type: Literal["trailing_stop"] = "trailing_stop"
    trail_percent: float = Field(gt=0, lt=100)
    peak_price: Optional[float] = Field(default=None, gt=0)


Order = Annotated[
    Union[LimitBuyOrder, TakeProfitOrder, StopLossOrder, TrailingStopOrder],
    Field(discriminator="order_type"),
]
_ORDER_ADAPTER = TypeAdapter(Order)


def _clean_row(row: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in row.items():
        if v is None:
            continue
        if isinstance(v, Decimal):
            v = float(v)
        elif k == "id":
            v = str(v)
        out[k] = v
    return out


def parse_order(row: Dict[str, Any]) -> Optional[Order]:
    """
    Row du store -> variante typée.
    Une row malformée (type inconnu, paramètre manquant ou <= 0) renvoie None :
    l'ordre reste inerte dans le store et n'est jamais évalué.
    """
    try:
        return _ORDER_ADAPTER.validate_python(_clean_row(row))
    except ValidationError as e:
        log.warning("ignoring malformed order %s: %s", str(row.get("id", "?"))[:8], e.errors()[:1])
        return None


class PriceObservation(BaseModel):
    token: str
    price: Optional[float] = None
    symbol: Optional[str] = None
    ts: int  # ms epoch
    indexed: bool = True


class SwapDescriptor(BaseModel):
    side: Literal["buy", "sell"]
    quote: Dict[str, Any]
    swap_transaction: str
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    out_sol: Optional[float] = None
    price_impact: float = 0.0
    fee_sol: float = 0.0
    route_plan: List[str] = Field(default_factory=list)


class FillRecord(BaseModel):
    fill_price: float
    fill_tx: str = AWAITING_SIGNATURE
    fill_sol: float
    fee_sol: float = 0.0


EventType = Literal["order_created", "order_triggered", "order_cancelled", "order_failed"]


class OrderEvent(BaseModel):
    type: EventType
    wallet: str
    order_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
