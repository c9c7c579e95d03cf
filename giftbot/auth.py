"""
Marketplace OAuth access tokens.

Tokens live in memory only; on a cold start the first call refreshes from
the configured refresh token.
"""

import logging
import time
from typing import Optional

import httpx

from giftbot.errors import AuthError, ConfigurationError

logger = logging.getLogger(__name__)

# Refresh this many seconds before the marketplace expiry
EXPIRY_MARGIN_SECONDS = 60


class TokenManager:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: str,
        app_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        seller_id: Optional[str] = None,
    ):
        self._client = client
        self._api_url = api_url.rstrip("/")
        self._app_id = app_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self.seller_id: Optional[str] = seller_id

    @property
    def token_valid(self) -> bool:
        return bool(self._access_token) and time.time() < self._expires_at - EXPIRY_MARGIN_SECONDS

    async def get_access_token(self) -> str:
        if self.token_valid:
            return self._access_token
        return await self.refresh()

    async def refresh(self) -> str:
        if not self._app_id or not self._client_secret:
            raise ConfigurationError("ML_APP_ID and ML_CLIENT_SECRET must be configured")
        if not self._refresh_token:
            raise ConfigurationError("ML_REFRESH_TOKEN must be configured")

        logger.info("Refreshing marketplace access token")
        try:
            response = await self._client.post(
                f"{self._api_url}/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._app_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Token refresh request failed: {e}") from e

        if response.status_code >= 400:
            error = ""
            try:
                error = response.json().get("error", "")
            except ValueError:
                pass
            if error == "invalid_client":
                raise AuthError("Marketplace rejected ML_APP_ID / ML_CLIENT_SECRET (invalid_client)")
            if error == "invalid_grant":
                raise AuthError("Refresh token expired or revoked (invalid_grant); re-authorize the application")
            raise AuthError(f"Token refresh failed ({response.status_code}): {response.text[:200]}")

        data = response.json()
        self._access_token = data["access_token"]
        self._expires_at = time.time() + int(data.get("expires_in", 21600))
        # The marketplace rotates refresh tokens on every use
        self._refresh_token = data.get("refresh_token") or self._refresh_token
        if data.get("user_id"):
            self.seller_id = str(data["user_id"])
        logger.info("Marketplace access token refreshed")
        return self._access_token
