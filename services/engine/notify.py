# services/engine/notify.py
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import httpx

log = logging.getLogger(__name__)


class OpsNotifier:
    """
    Alertes opérateur (échecs définitifs d'ordres) :
      - Discord (embed) si un webhook est configuré,
      - sinon Telegram si token + chat,
      - sinon simple log.
    Jamais bloquant pour le pipeline : toute erreur est loguée et avalée ici.
    """

    def __init__(self, discord_webhook_url: str | None = None, telegram_bot_token: str | None = None,
                 telegram_chat_id: str | None = None, timeout_s: float = 10.0,
                 client: httpx.AsyncClient | None = None):
        self.discord_webhook_url = discord_webhook_url or None
        self.telegram_bot_token = telegram_bot_token or None
        self.telegram_chat_id = telegram_chat_id or None
        self.timeout_s = timeout_s
        self._client = client

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_webhook_url)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _discord_post(self, payload: Dict[str, Any]) -> None:
        r = await self._http().post(self.discord_webhook_url, json=payload)
        if r.status_code == 429:
            try:
                retry = float(r.json().get("retry_after", 1.5))
            except ValueError:
                retry = 1.5
            log.warning("discord rate limited, retry_after=%ss", retry)
            await asyncio.sleep(retry)
            r = await self._http().post(self.discord_webhook_url, json=payload)
        if r.status_code >= 400:
            raise RuntimeError(f"discord HTTP {r.status_code}: {r.text[:200]}")

    @staticmethod
    def _flat(text: str, extra: Optional[Dict[str, Any]]) -> str:
        if not extra:
            return text
        return f"{text} | " + " | ".join(f"{k}={v}" for k, v in extra.items())

    async def notify(self, text: str, extra: Optional[Dict[str, Any]] = None) -> str:
        """Renvoie le canal utilisé : discord / telegram / log."""
        if self.discord_enabled:
            try:
                embed: Dict[str, Any] = {
                    "description": text,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "color": 0xE74C3C,
                }
                if extra:
                    embed["fields"] = [{"name": str(k), "value": str(v), "inline": True} for k, v in extra.items()]
                await self._discord_post({"embeds": [embed]})
                return "discord"
            except Exception as e:
                log.warning("discord send error: %r", e)

        if self.telegram_enabled:
            try:
                r = await self._http().post(
                    f"https://api.telegram.org/bot{self.telegram_bot_token}/sendMessage",
                    json={"chat_id": self.telegram_chat_id, "text": self._flat(text, extra),
                          "disable_web_page_preview": True},
                )
                if r.status_code >= 400:
                    raise RuntimeError(f"telegram HTTP {r.status_code}: {r.text[:200]}")
                return "telegram"
            except Exception as e:
                log.warning("telegram send error: %r", e)

        log.warning("ops alert: %s", self._flat(text, extra))
        return "log"
