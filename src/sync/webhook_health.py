"""Calendar push-notification channel lifecycle.

Detection and remediation run as separate jobs:

    run_health_check        — every 12h; re-registers channels that went silent
    renew_expiring_webhooks — daily; renews channels before the provider expires them

A subscription is *silent* when no notification has arrived for the
threshold (default 48h), measured from its last notification or, if it
never received one, from when it was created.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.errors import WebhookRegistrationError, WebhookValidationError
from src.sync.adaptive_scheduler import AdaptiveSyncScheduler
from src.sync.collaborators import CredentialStore, WebhookChannelClient
from src.sync.store import StateStore
from src.sync.token_health import TokenHealthMonitor
from src.sync.types import (
    IntegrationType,
    OAuthTokens,
    WebhookNotification,
    WebhookSubscription,
    utc_now,
)

logger = logging.getLogger("syncguard.sync.webhook_health")

CALENDAR = IntegrationType.GOOGLE_CALENDAR

# Resource states sent by the provider.  "sync" is the handshake sent right
# after a channel is created and carries no change.
STATE_SYNC = "sync"
STATE_EXISTS = "exists"


@dataclass
class NotificationOutcome:
    user_id: str
    trigger_sync: bool


@dataclass
class WebhookHealthReport:
    """Result of one health-check run.

    Attributes:
        checked:      Active subscriptions inspected.
        stale:        Subscriptions silent beyond the threshold.
        attempted:    Re-registrations attempted.
        reregistered: Re-registrations that succeeded.
        failed:       Re-registrations that failed.
        expiring:     User ids whose channel expires soon (alert only).
        errors:       Per-user failure messages.
        alert:        True when the failure rate exceeded the threshold.
    """

    checked: int = 0
    stale: int = 0
    attempted: int = 0
    reregistered: int = 0
    failed: int = 0
    expiring: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    alert: bool = False

    @property
    def failure_rate(self) -> float:
        return self.failed / self.attempted if self.attempted else 0.0


@dataclass
class WebhookRenewalReport:
    checked: int = 0
    renewed: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class WebhookHealthManager:
    def __init__(
        self,
        store: StateStore,
        channels: WebhookChannelClient,
        credentials: CredentialStore,
        tokens: TokenHealthMonitor,
        scheduler: AdaptiveSyncScheduler,
        callback_url: str,
        silence_threshold: timedelta = timedelta(hours=48),
        expiry_window: timedelta = timedelta(hours=24),
        alert_failure_rate: float = 0.20,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._channels = channels
        self._credentials = credentials
        self._tokens = tokens
        self._scheduler = scheduler
        self.callback_url = callback_url
        self.silence_threshold = silence_threshold
        self.expiry_window = expiry_window
        self.alert_failure_rate = alert_failure_rate
        self._clock = clock

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    async def register_webhook(
        self, user_id: str, credentials: OAuthTokens | None = None
    ) -> WebhookSubscription:
        """Open a push channel for the user's calendar, replacing any existing one.

        Credentials close to expiry are refreshed first.  On failure the
        user's polling interval is restored to normal.

        Raises:
            WebhookRegistrationError: If no usable credentials exist or the
                provider refuses.
        """
        credentials = await self._usable_credentials(user_id, credentials)
        if credentials is None:
            await self._scheduler.restore_normal_polling(user_id, CALENDAR)
            raise WebhookRegistrationError(
                f"No usable calendar credentials for {user_id}"
            )

        existing = await self._store.get_subscription(user_id)
        if existing is not None:
            await self._stop_channel(existing, credentials)

        channel_id = str(uuid.uuid4())
        token = secrets.token_urlsafe(32)
        try:
            channel = await self._channels.watch(
                credentials, channel_id, token, self.callback_url
            )
        except Exception as exc:
            await self._store.delete_subscription(user_id)
            await self._scheduler.restore_normal_polling(user_id, CALENDAR)
            raise WebhookRegistrationError(
                f"Channel registration failed for {user_id}: {exc}"
            ) from exc

        subscription = WebhookSubscription(
            user_id=user_id,
            channel_id=channel_id,
            resource_id=channel.resource_id,
            expiration=channel.expiration,
            token=token,
            resource_uri=channel.resource_uri,
            created_at=self._clock(),
        )
        await self._store.save_subscription(subscription)
        await self._scheduler.set_webhook_fallback_interval(user_id, CALENDAR)
        logger.info(
            "Registered calendar webhook for %s (channel=%s, expires=%s)",
            user_id,
            channel_id,
            channel.expiration.isoformat(),
        )
        return subscription

    async def stop_webhook(self, user_id: str) -> bool:
        """Stop the user's channel and fall back to normal polling.

        Returns:
            False if the user had no subscription.
        """
        subscription = await self._store.get_subscription(user_id)
        if subscription is None:
            return False
        credentials = await self._usable_credentials(user_id)
        if credentials is not None:
            await self._stop_channel(subscription, credentials)
        await self._store.delete_subscription(user_id)
        await self._scheduler.restore_normal_polling(user_id, CALENDAR)
        logger.info("Stopped calendar webhook for %s", user_id)
        return True

    async def handle_notification(
        self,
        channel_id: str,
        resource_id: str,
        resource_state: str,
        token: str | None,
    ) -> NotificationOutcome:
        """Validate and log an incoming push notification.

        Raises:
            WebhookValidationError: Unknown channel/resource or token mismatch.
        """
        subscription = await self._store.get_subscription_by_channel(
            channel_id, resource_id
        )
        if subscription is None:
            raise WebhookValidationError(f"Unknown channel {channel_id}")

        if not hmac.compare_digest(subscription.token, token or ""):
            await self._store.record_notification(
                WebhookNotification(
                    user_id=subscription.user_id,
                    channel_id=channel_id,
                    resource_id=resource_id,
                    resource_state=resource_state,
                    result="failure",
                    error_message="Invalid channel token",
                    created_at=self._clock(),
                )
            )
            raise WebhookValidationError(f"Invalid token for channel {channel_id}")

        trigger = resource_state == STATE_EXISTS
        await self._store.record_notification(
            WebhookNotification(
                user_id=subscription.user_id,
                channel_id=channel_id,
                resource_id=resource_id,
                resource_state=resource_state,
                result="success" if trigger else "ignored",
                created_at=self._clock(),
            )
        )
        return NotificationOutcome(subscription.user_id, trigger)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def get_webhooks_with_no_recent_notifications(
        self, hours: float | None = None
    ) -> list[WebhookSubscription]:
        threshold = (
            timedelta(hours=hours) if hours is not None else self.silence_threshold
        )
        cutoff = self._clock() - threshold
        stale = []
        for subscription in await self._store.list_subscriptions():
            last_seen = await self._store.last_notification_at(subscription.user_id)
            if (last_seen or subscription.created_at) < cutoff:
                stale.append(subscription)
        return stale

    async def get_webhooks_expiring_within_hours(
        self, hours: float | None = None
    ) -> list[WebhookSubscription]:
        window = timedelta(hours=hours) if hours is not None else self.expiry_window
        cutoff = self._clock() + window
        return [
            s for s in await self._store.list_subscriptions() if s.expiration <= cutoff
        ]

    async def run_health_check(self) -> WebhookHealthReport:
        """Re-register every silent channel; expiring channels are reported only."""
        report = WebhookHealthReport(
            checked=len(await self._store.list_subscriptions())
        )
        stale = await self.get_webhooks_with_no_recent_notifications()
        report.stale = len(stale)

        for subscription in stale:
            report.attempted += 1
            try:
                await self.register_webhook(subscription.user_id)
                report.reregistered += 1
            except Exception as exc:
                logger.warning(
                    "Re-registration failed for %s: %s", subscription.user_id, exc
                )
                report.failed += 1
                report.errors[subscription.user_id] = str(exc)

        expiring = await self.get_webhooks_expiring_within_hours()
        report.expiring = [s.user_id for s in expiring]
        if report.expiring:
            logger.warning(
                "%d calendar webhooks expire within %s", len(expiring), self.expiry_window
            )

        if report.failure_rate > self.alert_failure_rate:
            report.alert = True
            logger.error(
                "ALERT: webhook re-registration failure rate %.1f%% (%d/%d) exceeds %.0f%%",
                report.failure_rate * 100,
                report.failed,
                report.attempted,
                self.alert_failure_rate * 100,
            )
        logger.info(
            "Webhook health check: checked=%d stale=%d reregistered=%d failed=%d",
            report.checked,
            report.stale,
            report.reregistered,
            report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def renew_expiring_webhooks(self) -> WebhookRenewalReport:
        expiring = await self.get_webhooks_expiring_within_hours()
        report = WebhookRenewalReport(checked=len(expiring))
        for subscription in expiring:
            try:
                await self.register_webhook(subscription.user_id)
                report.renewed += 1
            except Exception as exc:
                logger.warning("Renewal failed for %s: %s", subscription.user_id, exc)
                report.failed += 1
                report.errors[subscription.user_id] = str(exc)
        logger.info(
            "Webhook renewal: checked=%d renewed=%d failed=%d",
            report.checked,
            report.renewed,
            report.failed,
        )
        return report

    async def _usable_credentials(
        self, user_id: str, credentials: OAuthTokens | None = None
    ) -> OAuthTokens | None:
        if credentials is None:
            credentials = await self._credentials.get_credentials(user_id, CALENDAR)
        if credentials is None:
            return None
        check = await self._tokens.check_for_sync(user_id, CALENDAR, credentials)
        return check.credentials if check.usable else None

    async def _stop_channel(
        self, subscription: WebhookSubscription, credentials: OAuthTokens
    ) -> None:
        try:
            await self._channels.stop(
                credentials, subscription.channel_id, subscription.resource_id
            )
        except Exception as exc:
            # The provider expires orphaned channels on its own.
            logger.warning(
                "Could not stop channel %s for %s: %s",
                subscription.channel_id,
                subscription.user_id,
                exc,
            )
