"""External collaborators the sync layer calls but does not own.

Each collaborator is an abstract base class.  Provider implementations live
in ``src.integrations``; the ``Unconfigured*`` defaults raise
``CollaboratorNotConfigured`` so a job that needs a missing collaborator
fails permanently instead of retrying forever.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from src.errors import CollaboratorNotConfigured
from src.sync.types import IntegrationType, OAuthTokens, SyncType

logger = logging.getLogger("syncguard.sync.collaborators")


@dataclass
class SyncRoutineResult:
    """What one provider sync reported back.

    Attributes:
        items_processed: Records created/updated/deleted.
        api_calls_made:  Provider API requests issued.
        api_calls_saved: Requests avoided (e.g. sync token hit, no changes).
        change_detected: True when the provider returned any change.
        error:           Error message when the routine failed.
    """

    items_processed: int = 0
    api_calls_made: int = 0
    api_calls_saved: int = 0
    change_detected: bool = False
    error: str | None = None


@dataclass
class WatchChannel:
    """Provider acknowledgement of a push channel registration."""

    resource_id: str
    expiration: datetime
    resource_uri: str = ""


class SyncRoutine(ABC):
    """Performs the actual data synchronization for one integration."""

    @abstractmethod
    async def sync(
        self,
        user_id: str,
        credentials: OAuthTokens,
        sync_type: SyncType,
    ) -> SyncRoutineResult:
        """Run a sync. Failures are reported through ``SyncRoutineResult.error``."""


class OAuthRefresh(ABC):
    @abstractmethod
    async def refresh(
        self, integration: IntegrationType, refresh_token: str
    ) -> OAuthTokens:
        """Exchange a refresh token for new tokens.

        Raises:
            OAuthRefreshError: ``revoked=True`` when the grant is dead.
        """


class CredentialStore(ABC):
    @abstractmethod
    async def get_credentials(
        self, user_id: str, integration: IntegrationType
    ) -> OAuthTokens | None: ...

    @abstractmethod
    async def save_credentials(
        self, user_id: str, integration: IntegrationType, tokens: OAuthTokens
    ) -> None: ...


class WebhookChannelClient(ABC):
    """Registers and stops provider push notification channels."""

    @abstractmethod
    async def watch(
        self,
        credentials: OAuthTokens,
        channel_id: str,
        token: str,
        address: str,
    ) -> WatchChannel: ...

    @abstractmethod
    async def stop(
        self, credentials: OAuthTokens, channel_id: str, resource_id: str
    ) -> None: ...


class Notifier(ABC):
    @abstractmethod
    async def send(self, user_id: str, template: str, data: dict[str, Any]) -> None: ...


class SuggestionService(ABC):
    @abstractmethod
    async def generate(self, user_id: str, data: dict[str, Any]) -> int:
        """Generate suggestions for a user. Returns how many were produced."""

    @abstractmethod
    async def regenerate(self, user_id: str, data: dict[str, Any]) -> int: ...


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class UnconfiguredSyncRoutine(SyncRoutine):
    def __init__(self, integration: IntegrationType) -> None:
        self.integration = integration

    async def sync(self, user_id, credentials, sync_type):
        raise CollaboratorNotConfigured(
            f"No sync routine configured for {self.integration.value}"
        )


class UnconfiguredOAuthRefresh(OAuthRefresh):
    async def refresh(self, integration, refresh_token):
        raise CollaboratorNotConfigured("No OAuth refresh client configured")


class UnconfiguredWebhookChannelClient(WebhookChannelClient):
    async def watch(self, credentials, channel_id, token, address):
        raise CollaboratorNotConfigured("No webhook channel client configured")

    async def stop(self, credentials, channel_id, resource_id):
        raise CollaboratorNotConfigured("No webhook channel client configured")


class UnconfiguredNotifier(Notifier):
    async def send(self, user_id, template, data):
        raise CollaboratorNotConfigured("No notifier configured")


class UnconfiguredSuggestionService(SuggestionService):
    async def generate(self, user_id, data):
        raise CollaboratorNotConfigured("No suggestion service configured")

    async def regenerate(self, user_id, data):
        raise CollaboratorNotConfigured("No suggestion service configured")


class InMemoryCredentialStore(CredentialStore):
    """Credential store for tests and local runs."""

    def __init__(self) -> None:
        self._tokens: dict[tuple[str, IntegrationType], OAuthTokens] = {}

    async def get_credentials(self, user_id, integration):
        tokens = self._tokens.get((user_id, integration))
        return replace(tokens) if tokens else None

    async def save_credentials(self, user_id, integration, tokens):
        self._tokens[(user_id, integration)] = replace(tokens)


@dataclass
class Collaborators:
    """Bundle of collaborators handed to ``build_runtime``.

    Anything left out falls back to its ``Unconfigured*`` default.
    """

    sync_routines: dict[IntegrationType, SyncRoutine] = field(default_factory=dict)
    oauth: OAuthRefresh = field(default_factory=UnconfiguredOAuthRefresh)
    credentials: CredentialStore = field(default_factory=InMemoryCredentialStore)
    channels: WebhookChannelClient = field(
        default_factory=UnconfiguredWebhookChannelClient
    )
    notifier: Notifier = field(default_factory=UnconfiguredNotifier)
    suggestions: SuggestionService = field(
        default_factory=UnconfiguredSuggestionService
    )

    def routine_for(self, integration: IntegrationType) -> SyncRoutine:
        routine = self.sync_routines.get(integration)
        if routine is None:
            return UnconfiguredSyncRoutine(integration)
        return routine
