from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession

from libs.common.models import FillRecord

log = logging.getLogger(__name__)

ORDER_COLUMNS = (
    "wallet", "token_address", "token_symbol", "order_type", "target_price", "target_multiplier",
    "trail_percent", "amount_sol", "slippage", "entry_price",
)


def _row(r) -> Dict[str, Any]:
    return dict(r._mapping)


class OrderStore:
    """
    Table `orders` (Postgres via asyncpg). Système de référence des ordres :
    l'OrderBook de l'engine n'en est qu'un cache.

    Course cancel / exécution : l'engine « claim » l'ordre (executing_at) avant le
    premier essai ; un cancel ne touche qu'un ordre actif NON claimé, et les écritures
    terminales ne touchent qu'un ordre encore actif. Une exécution lancée gagne toujours.
    """

    def __init__(self, dsn: str, engine: AsyncEngine | None = None):
        self.engine = engine or create_async_engine(dsn, echo=False, pool_pre_ping=True)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    def session(self) -> AsyncSession:
        return self._sessions()

    async def close(self) -> None:
        await self.engine.dispose()

    async def ensure_orders_table(self) -> None:
        async with self.session() as s:
            await s.execute(text("""
                CREATE TABLE IF NOT EXISTS orders (
                  id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
                  wallet TEXT NOT NULL,
                  token_address TEXT NOT NULL,
                  token_symbol TEXT,
                  order_type TEXT NOT NULL CHECK (order_type IN ('limit_buy', 'take_profit', 'stop_loss', 'trailing_stop')),
                  target_price NUMERIC,
                  target_multiplier NUMERIC,
                  trail_percent NUMERIC,
                  amount_sol NUMERIC NOT NULL,
                  slippage NUMERIC DEFAULT 5,
                  entry_price NUMERIC,
                  status TEXT DEFAULT 'active' CHECK (status IN ('active', 'filled', 'cancelled', 'failed')),
                  peak_price NUMERIC,
                  executing_at TIMESTAMPTZ,
                  fill_price NUMERIC,
                  fill_tx TEXT,
                  fill_sol NUMERIC,
                  fee_sol NUMERIC,
                  fail_reason TEXT,
                  created_at TIMESTAMPTZ DEFAULT now(),
                  filled_at TIMESTAMPTZ,
                  updated_at TIMESTAMPTZ DEFAULT now()
                )
            """))
            # un index par appel (asyncpg refuse le multi-statement)
            await s.execute(text("CREATE INDEX IF NOT EXISTS idx_orders_wallet ON orders(wallet)"))
            await s.execute(text("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)"))
            await s.execute(text(
                "CREATE INDEX IF NOT EXISTS idx_orders_active ON orders(status, token_address) WHERE status = 'active'"
            ))
            await s.commit()

    async def ping(self) -> bool:
        try:
            async with self.session() as s:
                await s.execute(text("SELECT 1"))
            return True
        except Exception as e:
            log.warning("db ping failed: %s", e)
            return False

    # ---------- CRUD ----------
    async def create_order(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        params = {k: fields.get(k) for k in ORDER_COLUMNS}
        if params["slippage"] is None:
            params["slippage"] = 5
        q = text("""
            INSERT INTO orders (wallet, token_address, token_symbol, order_type, target_price,
                                target_multiplier, trail_percent, amount_sol, slippage, entry_price, status)
            VALUES (:wallet, :token_address, :token_symbol, :order_type, :target_price,
                    :target_multiplier, :trail_percent, :amount_sol, :slippage, :entry_price, 'active')
            RETURNING *
        """)
        async with self.session() as s:
            res = await s.execute(q, params)
            row = _row(res.fetchone())
            await s.commit()
        return row

    async def get_active_orders(self) -> List[Dict[str, Any]]:
        q = text("SELECT * FROM orders WHERE status = 'active' ORDER BY created_at ASC")
        async with self.session() as s:
            res = await s.execute(q)
            return [_row(r) for r in res.fetchall()]

    async def get_orders_by_wallet(self, wallet: str, status: str | None = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM orders WHERE wallet = :w"
        params: Dict[str, Any] = {"w": wallet, "lim": limit}
        if status:
            sql += " AND status = :st"
            params["st"] = status
        sql += " ORDER BY created_at DESC LIMIT :lim"
        async with self.session() as s:
            res = await s.execute(text(sql), params)
            return [_row(r) for r in res.fetchall()]

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as s:
            res = await s.execute(text("SELECT * FROM orders WHERE id = CAST(:id AS uuid)"), {"id": order_id})
            r = res.fetchone()
        return _row(r) if r else None

    async def count_active(self, wallet: str) -> int:
        q = text("SELECT count(*) FROM orders WHERE wallet = :w AND status = 'active'")
        async with self.session() as s:
            res = await s.execute(q, {"w": wallet})
            return int(res.scalar() or 0)

    # ---------- transitions ----------
    async def cancel_order(self, order_id: str, wallet: str) -> Optional[Dict[str, Any]]:
        """Annule seulement un ordre actif, possédé par `wallet` et pas en cours d'exécution."""
        q = text("""
            UPDATE orders SET status = 'cancelled', updated_at = now()
            WHERE id = CAST(:id AS uuid) AND wallet = :w AND status = 'active' AND executing_at IS NULL
            RETURNING *
        """)
        async with self.session() as s:
            res = await s.execute(q, {"id": order_id, "w": wallet})
            r = res.fetchone()
            await s.commit()
        return _row(r) if r else None

    async def claim_order(self, order_id: str) -> bool:
        q = text("""
            UPDATE orders SET executing_at = now(), updated_at = now()
            WHERE id = CAST(:id AS uuid) AND status = 'active' AND executing_at IS NULL
            RETURNING id
        """)
        async with self.session() as s:
            res = await s.execute(q, {"id": order_id})
            ok = res.fetchone() is not None
            await s.commit()
        return ok

    async def release_claims(self) -> int:
        """Au démarrage : les claims d'un process mort redeviennent évaluables."""
        q = text("""
            UPDATE orders SET executing_at = NULL, updated_at = now()
            WHERE status = 'active' AND executing_at IS NOT NULL
        """)
        async with self.session() as s:
            res = await s.execute(q)
            await s.commit()
        return int(res.rowcount or 0)

    async def release_claim(self, order_id: str) -> bool:
        """Rend un ordre encore actif de nouveau évaluable (et annulable)."""
        q = text("""
            UPDATE orders SET executing_at = NULL, updated_at = now()
            WHERE id = CAST(:id AS uuid) AND status = 'active' AND executing_at IS NOT NULL
            RETURNING id
        """)
        async with self.session() as s:
            res = await s.execute(q, {"id": order_id})
            ok = res.fetchone() is not None
            await s.commit()
        return ok

    async def fill_order(self, order_id: str, fill: FillRecord) -> bool:
        q = text("""
            UPDATE orders SET status = 'filled', fill_price = :px, fill_tx = :tx, fill_sol = :sol,
                   fee_sol = :fee, filled_at = now(), updated_at = now()
            WHERE id = CAST(:id AS uuid) AND status = 'active'
            RETURNING id
        """)
        async with self.session() as s:
            res = await s.execute(q, {"id": order_id, "px": fill.fill_price, "tx": fill.fill_tx,
                                      "sol": fill.fill_sol, "fee": fill.fee_sol})
            ok = res.fetchone() is not None
            await s.commit()
        return ok

    async def fail_order(self, order_id: str, reason: str = "") -> bool:
        q = text("""
            UPDATE orders SET status = 'failed', fail_reason = :reason, updated_at = now()
            WHERE id = CAST(:id AS uuid) AND status = 'active'
            RETURNING id
        """)
        async with self.session() as s:
            res = await s.execute(q, {"id": order_id, "reason": reason})
            ok = res.fetchone() is not None
            await s.commit()
        return ok

    async def update_peak(self, order_id: str, peak_price: float) -> None:
        # jamais de retour arrière du plus-haut, même si deux écritures se croisent
        q = text("""
            UPDATE orders SET peak_price = :p, updated_at = now()
            WHERE id = CAST(:id AS uuid) AND status = 'active' AND (peak_price IS NULL OR peak_price < :p)
        """)
        async with self.session() as s:
            await s.execute(q, {"id": order_id, "p": peak_price})
            await s.commit()

    # ---------- stats ----------
    async def get_stats(self, wallet: str) -> Dict[str, Any]:
        q = text("SELECT status, fill_sol, amount_sol, fee_sol FROM orders WHERE wallet = :w")
        async with self.session() as s:
            res = await s.execute(q, {"w": wallet})
            rows = [_row(r) for r in res.fetchall()]
        return compute_stats(rows)


def compute_stats(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    filled = [r for r in rows if r["status"] == "filled"]
    active = [r for r in rows if r["status"] == "active"]
    total_pnl = 0.0
    wins = 0
    for r in filled:
        pnl = float(r.get("fill_sol") or 0) - float(r.get("amount_sol") or 0) - float(r.get("fee_sol") or 0)
        total_pnl += pnl
        if pnl > 0:
            wins += 1
    return {
        "total_orders": len(rows),
        "active_orders": len(active),
        "filled_orders": len(filled),
        "total_pnl": round(total_pnl, 4),
        "win_rate": round(wins / len(filled) * 100) if filled else 0,
        "total_fees": sum(float(r.get("fee_sol") or 0) for r in filled),
    }
