"""
Utility functions for the bot.
"""

import hashlib
import logging
import re
import unicodedata
from typing import Optional

logger = logging.getLogger(__name__)


def normalize_text(text: Optional[str]) -> str:
    """Lower-case, strip accents and collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


def message_hash(message_key: str, text: str) -> str:
    """
    Digest identifying one inbound buyer message within a sale.

    Args:
        message_key: Marketplace message id, or creation time / position
            when the id is missing
        text: Message text (normalized before hashing)
    """
    payload = f"{message_key}|{normalize_text(text)}"
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def chunk_text(text: str, limit: int) -> list[str]:
    """
    Split text into pieces no longer than limit.

    Splits on blank lines first, then on lines, then on spaces; a single word
    longer than the limit is cut hard.
    """
    text = text.strip()
    if len(text) <= limit:
        return [text] if text else []

    chunks: list[str] = []
    current = ""
    for token in re.split(r"(\n\n|\n| )", text):
        if len(current) + len(token) <= limit:
            current += token
            continue
        if current.strip():
            chunks.append(current.strip())
        current = token.lstrip() if token.strip() else ""
        while len(current) > limit:
            chunks.append(current[:limit])
            current = current[limit:]
    if current.strip():
        chunks.append(current.strip())
    return chunks


def extract_resource_id(resource: str, prefix: Optional[str] = None) -> str:
    """
    Take the id out of a webhook resource path.

    "/orders/123" -> "123", "/messages-mp-v2/abc" -> "abc", "456" -> "456".
    """
    value = (resource or "").strip()
    if prefix and value.startswith(prefix):
        value = value[len(prefix):]
    parts = [part for part in value.split("/") if part]
    return parts[-1] if parts else value


def verify_application_id(received: Optional[object], expected: Optional[str]) -> bool:
    """
    Check that a notification was addressed to our marketplace application.

    Passes when no application id is configured or the payload carries none.
    """
    if not expected or received in (None, ""):
        return True
    is_valid = str(received) == str(expected)
    if not is_valid:
        logger.warning(f"Notification for foreign application id: {received}")
    return is_valid
