"""
Token refresh supervisor — hands out a usable access token.

Refresh is lazy: it happens inside the call that needs the token, never on a
timer. The credential row is re-read every time since another request may
have rotated it. Two concurrent refreshes are tolerated; whichever writes
last wins.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from dealerledger.auth.oauth2 import FortnoxOAuthClient, OAuthProtocolError
from dealerledger.auth.vault import CredentialVault
from dealerledger.errors import FortnoxApiError, NoActiveIntegration, ReauthenticationRequired
from dealerledger.storage.models import FortnoxCredential, utcnow
from dealerledger.storage.repository import StorageRepository

logger = logging.getLogger("dealerledger.auth.refresh")


class TokenRefreshSupervisor:
    """Returns access tokens, refreshing them shortly before they expire.

    Usage::

        supervisor = TokenRefreshSupervisor(repository, vault, oauth)
        token = await supervisor.get_valid_access_token(credential)
    """

    def __init__(
        self,
        repository: StorageRepository,
        vault: CredentialVault,
        oauth: FortnoxOAuthClient,
        *,
        buffer_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.oauth = oauth
        self.buffer = timedelta(seconds=buffer_seconds)

    def needs_refresh(self, credential: FortnoxCredential) -> bool:
        if credential.token_expires_at is None:
            return True
        return utcnow() >= credential.token_expires_at - self.buffer

    async def get_valid_access_token(self, credential: FortnoxCredential) -> str:
        latest = self.repository.get_credential(credential.id)
        if latest is None or not latest.is_active:
            # Reconnected since the caller looked it up
            latest = self.repository.active_credential_for_user(credential.user_id)
        if latest is None:
            raise NoActiveIntegration(f"No active Fortnox credential for user {credential.user_id}")

        if not self.needs_refresh(latest):
            return self.vault.read_possibly_legacy_token(latest.access_token)

        logger.info(
            "Refreshing Fortnox access token for user %s (expires %s)", latest.user_id, latest.token_expires_at
        )
        refresh_token = self.vault.read_possibly_legacy_token(latest.refresh_token) if latest.refresh_token else ""

        try:
            token = await self.oauth.refresh(refresh_token)
        except OAuthProtocolError as e:
            if e.status == 0 and e.error is None:
                raise FortnoxApiError(0, str(e), endpoint="oauth-v1/token") from e
            logger.warning("Fortnox refresh rejected for user %s: %s", latest.user_id, e.error or e)
            self.repository.log_error(
                latest.user_id,
                "refresh_token_error",
                str(e),
                {"credential_id": latest.id, "provider_error": e.error, "status": e.status},
            )
            raise ReauthenticationRequired(f"Refresh token rejected: {e}") from e

        self.repository.update_credential(
            latest.id,
            access_token=self.vault.encrypt(token.access_token),
            refresh_token=self.vault.encrypt(token.refresh_token),
            token_expires_at=token.expires_at_datetime,
        )
        return token.access_token
