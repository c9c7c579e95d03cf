"""
Buyer intent vocabularies.

Text is normalized (lower case, no accents) before matching, and every
pattern is anchored on word boundaries so "si" does not fire inside "sin".
"""

import re
from enum import Enum

from giftbot.utils import normalize_text


class Intent(str, Enum):
    READY = "ready"
    CANCEL = "cancel"
    HUMAN = "human"
    RESEND = "resend"
    CHANGE_PRODUCT = "change_product"


_VOCABULARIES = {
    Intent.READY: re.compile(
        r"\b(listo|lista|ready|si|ok+|okey|dale|confirmo|confirmado|de una|"
        r"enviame|envialo|envia|mandame|mandalo|dame|pasame|el codigo|ya esta|ya estoy)\b"
    ),
    Intent.CANCEL: re.compile(
        r"(\bcancel\w*|\barrepenti\w*|\bno quiero\b|\breembolso\b|\bdevolucion\b|"
        r"\bdevolver\b|^no[.!]*$)"
    ),
    Intent.HUMAN: re.compile(
        r"\b(humano|persona|asesor|vendedor|operador|ayuda|problema|reclamo)\b"
    ),
    Intent.RESEND: re.compile(
        r"\b(no me llego|no me lleg\w*|no llego|no recibi\w*|no me (lo )?mandaron|"
        r"no funciona|no anda|no lo veo|no veo|donde esta|reenvia\w*|resend|"
        r"didnt receive|didn't receive|lost code)\b"
    ),
    Intent.CHANGE_PRODUCT: re.compile(
        r"\b(cambiar|cambio|otro producto|otra tarjeta|en vez de|en lugar de|prefiero|prefer|change)\b"
    ),
}


def detect_intents(text: str) -> frozenset:
    """Return every intent whose vocabulary matches the text."""
    normalized = normalize_text(text)
    if not normalized:
        return frozenset()
    return frozenset(
        intent for intent, pattern in _VOCABULARIES.items() if pattern.search(normalized)
    )
