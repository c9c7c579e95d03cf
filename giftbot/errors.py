"""
Exception types shared across the bot.

Handlers catch these where a safe fallback exists; anything that reaches the
webhook route is logged, pushed to the operator and acknowledged with 200.
"""

from typing import Optional


class GiftBotError(Exception):
    """Base class for all bot errors."""


class ConfigurationError(GiftBotError):
    """A required setting or credential is missing."""


class AuthError(GiftBotError):
    """The marketplace rejected or could not issue an access token."""


class MarketplaceError(GiftBotError):
    """A marketplace API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(MarketplaceError):
    """The marketplace kept answering 429 after the retry budget was spent."""

    def __init__(self, message: str):
        super().__init__(message, status_code=429)


class InventoryError(GiftBotError):
    """Drawing or marking an inventory code failed."""
