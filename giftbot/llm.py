"""
LLM fallback for buyer text the keyword tables cannot answer.

The model is told to reply with NO_RESPONDER when the knowledge prompt does
not cover the question; that sentinel, a missing API key, and any API error
all come back as None so the caller falls through to a human.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from openai import AsyncOpenAI

from giftbot.errors import ConfigurationError

logger = logging.getLogger(__name__)

NO_ANSWER_SENTINEL = "NO_RESPONDER"

_KNOWLEDGE = """Vendemos Gift Cards digitales (Roblox y Steam) en Mercado Libre.
- La entrega es 100% digital e instantanea por el chat de Mercado Libre.
- No hay envio fisico ni por mail.
- Roblox se canjea en www.roblox.com/redeem desde un navegador, no desde la app.
- Steam se canjea en la seccion "Canjear codigo de billetera" de la tienda.
- Aceptamos todos los medios de pago de Mercado Libre."""

_CHAT_PROMPT = f"""Sos el asistente post-venta de una tienda de Gift Cards.
{_KNOWLEDGE}

Reglas:
- Responde en espanol, en 4 lineas como maximo.
- Nunca inventes ni envies codigos.
- Si el comprador quiere su codigo, pedile que responda LISTO.
- Si la consulta no esta cubierta por esta informacion responde exactamente {NO_ANSWER_SENTINEL}."""

_QUESTION_PROMPT = f"""Respondes preguntas de compradores en una publicacion de Mercado Libre.
{_KNOWLEDGE}

Reglas:
- Responde en espanol, breve y cordial.
- No inventes datos que no esten en esta informacion o en la descripcion.
- Si no podes responder con seguridad responde exactamente {NO_ANSWER_SENTINEL}."""


@lru_cache(maxsize=1)
def get_openai_client(api_key: str) -> AsyncOpenAI:
    """Return a cached AsyncOpenAI client for the given key."""
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not configured")
    return AsyncOpenAI(api_key=api_key)


class LlmAnswerer:
    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini", client: Optional[AsyncOpenAI] = None):
        self._api_key = api_key
        self._model = model
        self._client = client

    @property
    def available(self) -> bool:
        return bool(self._client or self._api_key)

    async def _complete(self, system_prompt: str, user_prompt: str, max_tokens: int) -> Optional[str]:
        if not self.available:
            logger.debug("LLM tier disabled, no OPENAI_API_KEY")
            return None
        try:
            client = self._client or get_openai_client(self._api_key)
            response = await client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
                temperature=0.2,
            )
        except Exception as e:
            logger.error(f"LLM request failed: {e}")
            return None

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content or NO_ANSWER_SENTINEL in content:
            logger.info("LLM declined to answer")
            return None
        return content

    async def answer_chat(self, text: str, product_label: str = "") -> Optional[str]:
        """Short post-sale reply to a buyer message, or None."""
        prompt = f"Producto comprado: {product_label or 'Gift Card'}\nMensaje del comprador: {text}"
        return await self._complete(_CHAT_PROMPT, prompt, max_tokens=200)

    async def answer_question(self, question: str, item_title: str = "", description: str = "") -> Optional[str]:
        """Answer to a pre-sale listing question, or None."""
        prompt = f"Publicacion: {item_title}\n"
        if description:
            prompt += f"Descripcion: {description[:1500]}\n"
        prompt += f"Pregunta: {question}"
        return await self._complete(_QUESTION_PROMPT, prompt, max_tokens=400)
