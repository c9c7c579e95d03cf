"""
Operator alerts over Telegram.

notify() never raises and never blocks the conversation on a failed alert.
Only critical categories reach Telegram; everything else is logged.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

CRITICAL_CATEGORIES = frozenset({"stock", "code", "auth", "webhook", "human", "question"})

_HEADERS = {
    "stock": "SIN STOCK - URGENTE",
    "code": "ERROR AL ENTREGAR CODIGO",
    "auth": "ERROR DE AUTENTICACION",
    "webhook": "ERROR CRITICO",
    "human": "ATENCION REQUERIDA",
    "question": "PREGUNTA SIN RESPONDER",
}


class TelegramNotifier:
    def __init__(
        self,
        token: Optional[str],
        chat_id: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        api_url: str = "https://api.telegram.org",
    ):
        self._token = token
        self._chat_id = chat_id
        self._client = client
        self._api_url = api_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._token and self._chat_id)

    async def notify(self, category: str, message: str) -> bool:
        """
        Alert the operator.

        Returns:
            True when the alert was delivered (or only needed logging),
            False when a critical alert could not be sent.
        """
        if category not in CRITICAL_CATEGORIES:
            logger.info(f"Non-critical notification ({category}): {message}")
            return True

        if not self.configured:
            logger.error(f"Telegram credentials not configured, dropping {category} alert: {message}")
            return False

        text = f"{_HEADERS.get(category, category.upper())}\n\n{message}"
        try:
            client = self._client or httpx.AsyncClient(timeout=10.0)
            try:
                response = await client.post(
                    f"{self._api_url}/bot{self._token}/sendMessage",
                    json={"chat_id": self._chat_id, "text": text},
                )
            finally:
                if self._client is None:
                    await client.aclose()
            if response.status_code >= 400:
                logger.error(f"Telegram send failed ({response.status_code}): {response.text[:200]}")
                return False
            return True
        except Exception as e:
            logger.error(f"Telegram send error: {e}")
            return False
