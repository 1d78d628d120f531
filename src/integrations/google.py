"""Google OAuth token refresh and Calendar push channels over httpx.

Supports:
- Refresh-token grant against Google's OAuth2 token endpoint
- Calendar ``events.watch`` / ``channels.stop`` for push notifications
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import httpx

from src.errors import OAuthRefreshError, TransientJobError
from src.sync.collaborators import OAuthRefresh, WatchChannel, WebhookChannelClient
from src.sync.types import IntegrationType, OAuthTokens, utc_now

logger = logging.getLogger("syncguard.integrations.google")

_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

# Errors meaning the grant is gone and the user must re-authorize.
_REVOKED_ERRORS = {"invalid_grant", "unauthorized_client"}


class GoogleOAuthRefresh(OAuthRefresh):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the refresher.

        Args:
            client_id:     OAuth2 client ID (GOOGLE_CLIENT_ID).
            client_secret: OAuth2 client secret (GOOGLE_CLIENT_SECRET).
            http_client:   Optional pre-configured httpx client (for testing).
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client or httpx.AsyncClient(timeout=30)

    async def refresh(self, integration: IntegrationType, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Raises:
            OAuthRefreshError: On a 4xx answer (``revoked`` for invalid_grant).
            TransientJobError: On network errors or a 5xx answer.
        """
        logger.info("Google: refreshing %s token", integration.value)
        try:
            response = await self._http_client.post(
                _GOOGLE_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.HTTPError as exc:
            raise TransientJobError(f"Google token endpoint unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientJobError(f"Google token endpoint returned {response.status_code}")
        if response.is_error:
            try:
                error = response.json().get("error", "")
            except ValueError:
                error = ""
            raise OAuthRefreshError(
                f"Token refresh rejected: {error or response.status_code}",
                revoked=error in _REVOKED_ERRORS,
            )

        data = response.json()
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", refresh_token),
            expires_at=utc_now() + timedelta(seconds=data.get("expires_in", 3600)),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", "").split(),
        )


class GoogleCalendarChannelClient(WebhookChannelClient):
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        calendar_id: str = "primary",
    ) -> None:
        self._http_client = http_client or httpx.AsyncClient(timeout=30)
        self.calendar_id = calendar_id

    @staticmethod
    def _headers(credentials: OAuthTokens) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}"}

    async def watch(self, credentials, channel_id, token, address):
        response = await self._http_client.post(
            f"{_CALENDAR_API_BASE}/calendars/{self.calendar_id}/events/watch",
            json={"id": channel_id, "type": "web_hook", "address": address, "token": token},
            headers=self._headers(credentials),
        )
        response.raise_for_status()
        data = response.json()
        # expiration is epoch milliseconds as a string
        expiration = datetime.fromtimestamp(int(data["expiration"]) / 1000, tz=timezone.utc)
        return WatchChannel(
            resource_id=data["resourceId"],
            expiration=expiration,
            resource_uri=data.get("resourceUri", ""),
        )

    async def stop(self, credentials, channel_id, resource_id):
        response = await self._http_client.post(
            f"{_CALENDAR_API_BASE}/channels/stop",
            json={"id": channel_id, "resourceId": resource_id},
            headers=self._headers(credentials),
        )
        if response.status_code == 404:
            logger.debug("Channel %s already gone", channel_id)
            return
        response.raise_for_status()
