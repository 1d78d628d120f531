"""OAuth token health tracking and proactive refresh.

Two paths keep tokens usable:

    check_for_sync          — lazy; called by the orchestrator before each sync
    refresh_expiring_tokens — proactive batch run by the token-refresh job

A ``revoked`` or ``expired`` record is sticky: it short-circuits every later
check until the user re-authorizes (``mark_reauthorized``) or the record is
cleared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.errors import OAuthRefreshError, TokenInvalidError
from src.sync.collaborators import CredentialStore, OAuthRefresh
from src.sync.store import StateStore
from src.sync.types import (
    IntegrationType,
    OAuthTokens,
    TokenHealthRecord,
    TokenStatus,
    utc_now,
)

logger = logging.getLogger("syncguard.sync.token_health")


@dataclass
class TokenCheck:
    """Outcome of ``check_for_sync``.

    Attributes:
        status:      Token status after the check.
        credentials: Credentials to sync with (refreshed when ``refreshed``).
        refreshed:   True if a lazy refresh was performed.
        error:       Why the token is unusable, if it is.
    """

    status: TokenStatus
    credentials: OAuthTokens | None = None
    refreshed: bool = False
    error: str | None = None

    @property
    def usable(self) -> bool:
        return self.status.usable


@dataclass
class TokenRefreshReport:
    checked: int = 0
    refreshed: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    alert: bool = False

    @property
    def failure_rate(self) -> float:
        attempts = self.refreshed + self.failed
        return self.failed / attempts if attempts else 0.0


class TokenHealthMonitor:
    """Tracks ``TokenHealthRecord`` rows and refreshes tokens through OAuthRefresh."""

    def __init__(
        self,
        store: StateStore,
        oauth: OAuthRefresh,
        credentials: CredentialStore,
        refresh_buffer: timedelta = timedelta(minutes=5),
        expiring_soon: timedelta = timedelta(hours=24),
        refresh_lookahead: timedelta = timedelta(hours=48),
        alert_failure_rate: float = 0.10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._credentials = credentials
        self.refresh_buffer = refresh_buffer
        self.expiring_soon = expiring_soon
        self.refresh_lookahead = refresh_lookahead
        self.alert_failure_rate = alert_failure_rate
        self._clock = clock

    # ------------------------------------------------------------------
    # Lazy path
    # ------------------------------------------------------------------

    async def check_for_sync(
        self,
        user_id: str,
        integration: IntegrationType,
        credentials: OAuthTokens | None,
    ) -> TokenCheck:
        """Decide whether a sync may use these credentials, refreshing if needed."""
        record = await self._store.get_token_health(user_id, integration)
        if record is not None and not record.status.usable:
            return TokenCheck(record.status, error=record.error_message)

        if credentials is None or not credentials.access_token:
            await self._set_status(
                user_id, integration, TokenStatus.REVOKED, None, "No credentials stored"
            )
            return TokenCheck(TokenStatus.REVOKED, error="No credentials stored")

        now = self._clock()
        refreshed = False
        if (
            credentials.expires_at is not None
            and credentials.expires_at - now < self.refresh_buffer
        ):
            try:
                credentials = await self._refresh(user_id, integration, credentials)
            except OAuthRefreshError as exc:
                status = TokenStatus.REVOKED if exc.revoked else TokenStatus.EXPIRED
                await self._set_status(
                    user_id, integration, status, credentials.expires_at, str(exc)
                )
                return TokenCheck(status, error=str(exc))
            refreshed = True

        status = self._status_for_expiry(credentials.expires_at)
        await self._set_status(user_id, integration, status, credentials.expires_at)
        return TokenCheck(status, credentials=credentials, refreshed=refreshed)

    async def get_access_token(self, user_id: str, integration: IntegrationType) -> str:
        """Return a usable access token for an interactive caller.

        Raises:
            TokenInvalidError: If the token is revoked, expired, or cannot be refreshed.
        """
        credentials = await self._credentials.get_credentials(user_id, integration)
        check = await self.check_for_sync(user_id, integration, credentials)
        if not check.usable or check.credentials is None:
            raise TokenInvalidError(user_id, integration.value, check.status.value)
        return check.credentials.access_token

    # ------------------------------------------------------------------
    # Proactive batch
    # ------------------------------------------------------------------

    async def refresh_expiring_tokens(self) -> TokenRefreshReport:
        """Refresh every token that is expiring soon or inside the lookahead window.

        One user's failure is recorded and the batch continues.  The run is
        flagged with ``alert`` when the failure rate exceeds the threshold.
        """
        cutoff = self._clock() + self.refresh_lookahead
        records = await self._store.list_tokens_for_refresh(cutoff)
        report = TokenRefreshReport(checked=len(records))

        for record in records:
            user_id, integration = record.user_id, record.integration_type
            try:
                credentials = await self._credentials.get_credentials(user_id, integration)
                if credentials is None:
                    raise OAuthRefreshError("No credentials stored", revoked=True)
                fresh = await self._refresh(user_id, integration, credentials)
                await self._set_status(
                    user_id, integration, TokenStatus.VALID, fresh.expires_at
                )
                report.refreshed += 1
            except OAuthRefreshError as exc:
                status = TokenStatus.REVOKED if exc.revoked else TokenStatus.EXPIRED
                await self._set_status(
                    user_id, integration, status, record.expires_at, str(exc)
                )
                report.failed += 1
                report.errors[user_id] = str(exc)
            except Exception as exc:
                logger.exception(
                    "Token refresh failed for %s/%s", user_id, integration.value
                )
                report.failed += 1
                report.errors[user_id] = str(exc)

        if report.failure_rate > self.alert_failure_rate:
            report.alert = True
            logger.error(
                "ALERT: token refresh failure rate %.1f%% (%d/%d) exceeds %.0f%%",
                report.failure_rate * 100,
                report.failed,
                report.refreshed + report.failed,
                self.alert_failure_rate * 100,
            )
        logger.info(
            "Token refresh run: checked=%d refreshed=%d failed=%d",
            report.checked,
            report.refreshed,
            report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # Status management
    # ------------------------------------------------------------------

    async def mark_token_invalid(
        self,
        user_id: str,
        integration: IntegrationType,
        reason: str,
        status: TokenStatus = TokenStatus.REVOKED,
    ) -> None:
        """Record an auth failure observed by a sync."""
        record = await self._store.get_token_health(user_id, integration)
        expires_at = record.expires_at if record else None
        await self._set_status(user_id, integration, status, expires_at, reason)

    async def mark_reauthorized(
        self,
        user_id: str,
        integration: IntegrationType,
        expires_at: datetime | None,
    ) -> None:
        await self._set_status(
            user_id, integration, self._status_for_expiry(expires_at), expires_at
        )

    async def clear(self, user_id: str, integration: IntegrationType) -> None:
        await self._store.delete_token_health(user_id, integration)

    async def get_tokens_needing_reminder(
        self, older_than: timedelta
    ) -> list[TokenHealthRecord]:
        """Unusable tokens that have been in that state for at least ``older_than``."""
        cutoff = self._clock() - older_than
        records = await self._store.list_token_health(
            [TokenStatus.EXPIRED, TokenStatus.REVOKED]
        )
        return [r for r in records if r.last_checked <= cutoff]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _status_for_expiry(self, expires_at: datetime | None) -> TokenStatus:
        if expires_at is not None and expires_at - self._clock() < self.expiring_soon:
            return TokenStatus.EXPIRING_SOON
        return TokenStatus.VALID

    async def _refresh(
        self,
        user_id: str,
        integration: IntegrationType,
        credentials: OAuthTokens,
    ) -> OAuthTokens:
        if not credentials.refresh_token:
            raise OAuthRefreshError("No refresh token available")
        fresh = await self._oauth.refresh(integration, credentials.refresh_token)
        if not fresh.refresh_token:
            fresh.refresh_token = credentials.refresh_token
        await self._credentials.save_credentials(user_id, integration, fresh)
        logger.info("Refreshed token for %s/%s", user_id, integration.value)
        return fresh

    async def _set_status(
        self,
        user_id: str,
        integration: IntegrationType,
        status: TokenStatus,
        expires_at: datetime | None,
        error: str | None = None,
    ) -> None:
        previous = await self._store.get_token_health(user_id, integration)
        await self._store.save_token_health(
            TokenHealthRecord(
                user_id=user_id,
                integration_type=integration,
                status=status,
                expires_at=expires_at,
                last_checked=self._clock(),
                error_message=error,
            )
        )
        if previous is not None and previous.status.usable and not status.usable:
            logger.warning(
                "Token for %s/%s became %s: %s",
                user_id,
                integration.value,
                status.value,
                error,
            )
