"""
OAuth handshake manager — connects a user's organization to Fortnox.

The handshake is a linear state machine. Each transition is guarded by a
database write so it holds across processes without in-process locks:

* the state nonce is consumed with a conditional UPDATE before any network
  call, so two callbacks carrying the same state cannot both proceed;
* the authorization code fingerprint is unique on the credential table, so
  the same code can never produce two stored credentials;
* a partial unique index allows one active credential per user, so two
  racing callbacks cannot both leave a credential active.

Nothing is persisted for the credential until the Fortnox company has been
checked against the caller's organization.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.exc import SQLAlchemyError

from dealerledger.auth.oauth2 import FortnoxOAuthClient, OAuthProtocolError
from dealerledger.auth.vault import CredentialVault
from dealerledger.errors import (
    AuthorizationFlowError,
    CodeReusedError,
    CompanyMismatchError,
    FortnoxApiError,
    PersistError,
    RecordNotFound,
    StateExpiredError,
    StateInvalidError,
    StateReusedError,
    TokenExchangeError,
)
from dealerledger.fortnox.client import FortnoxClient
from dealerledger.storage.models import FortnoxCredential, Organization, utcnow
from dealerledger.storage.repository import StorageRepository

logger = logging.getLogger("dealerledger.auth.handshake")


class HandshakeStep(str, Enum):
    """Handshake progress. The last six values are terminal failures."""

    NO_STATE = "no_state"
    STATE_ISSUED = "state_issued"
    CODE_RECEIVED = "code_received"
    STATE_VALIDATED = "state_validated"
    TOKEN_EXCHANGED = "token_exchanged"
    COMPANY_VALIDATED = "company_validated"
    CREDENTIAL_STORED = "credential_stored"

    STATE_EXPIRED = "state_expired"
    STATE_REUSED = "state_reused"
    CODE_REUSED = "code_reused"
    EXCHANGE_FAILED = "exchange_failed"
    COMPANY_MISMATCH = "company_mismatch"
    PERSIST_FAILED = "persist_failed"


@dataclass
class ConnectionStatus:
    """What the settings screen shows about a user's Fortnox connection."""

    connected: bool
    company_name: str | None = None
    company_id: str | None = None
    connected_since: datetime | None = None
    token_expires_at: datetime | None = None


def normalize_registration_number(value: str | None) -> str:
    """``556677-8899`` and ``556677 8899`` both become ``5566778899``."""
    if not value:
        return ""
    return "".join(ch for ch in str(value) if ch not in "- ").strip()


def code_fingerprint(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def _transition(user_id: str, previous: HandshakeStep, step: HandshakeStep) -> None:
    logger.debug("OAuth handshake for user %s: %s -> %s", user_id, previous.value, step.value)


def _violates(error: SQLIntegrityError, column: str) -> bool:
    """Whether the database named ``column`` in the constraint it rejected."""
    return column in str(error.orig)


class HandshakeManager:
    """Runs the authorization-code flow and stores the resulting credential.

    Usage::

        manager = HandshakeManager(repository, vault, oauth, state_ttl_seconds=600)
        url = manager.begin_authorization(user_id)
        # ... user consents, Fortnox redirects back with code & state ...
        credential = await manager.complete_authorization(user_id, code, state)
    """

    def __init__(
        self,
        repository: StorageRepository,
        vault: CredentialVault,
        oauth: FortnoxOAuthClient,
        *,
        state_ttl_seconds: int = 600,
        client_factory: Callable[[str], FortnoxClient] | None = None,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.oauth = oauth
        self.state_ttl = timedelta(seconds=state_ttl_seconds)
        self._client_factory = client_factory or (lambda token: FortnoxClient(oauth.config, token))

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def begin_authorization(self, user_id: str) -> str:
        """Issue a fresh state for ``user_id`` and return the consent URL."""
        self.cleanup_expired_states()
        state = secrets.token_urlsafe(32)
        self.repository.add_state(state, user_id)
        _transition(user_id, HandshakeStep.NO_STATE, HandshakeStep.STATE_ISSUED)
        logger.info("Issued OAuth state for user %s", user_id)
        return self.oauth.get_authorization_url(state)

    def cleanup_expired_states(self) -> int:
        removed = self.repository.purge_states_before(utcnow() - self.state_ttl)
        if removed:
            logger.debug("Purged %d expired OAuth states", removed)
        return removed

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def complete_authorization(self, user_id: str, code: str, state: str) -> FortnoxCredential:
        """Validate the callback, exchange the code and store the credential.

        Raises:
            CodeReusedError: The code was already exchanged.
            StateInvalidError: Unknown state, or one issued to another user.
            StateReusedError: The state was already redeemed.
            StateExpiredError: The state outlived its TTL.
            TokenExchangeError: Fortnox rejected the code.
            CompanyMismatchError: The Fortnox company is not the user's organization.
            PersistError: The credential could not be written.
        """
        try:
            return await self._complete(user_id, code, state)
        except AuthorizationFlowError as e:
            step = e.step.value if isinstance(e.step, HandshakeStep) else e.step
            logger.warning("OAuth callback for user %s failed at %s: %s", user_id, step, e)
            self.repository.log_error(
                user_id, "oauth_callback_error", str(e), {"step": step, "error": type(e).__name__}
            )
            raise

    async def _complete(self, user_id: str, code: str, state: str) -> FortnoxCredential:
        if not code or not state:
            raise StateInvalidError("Callback is missing code or state", step=HandshakeStep.CODE_RECEIVED)
        _transition(user_id, HandshakeStep.STATE_ISSUED, HandshakeStep.CODE_RECEIVED)

        # 1. Code single use
        fingerprint = code_fingerprint(code)
        if self.repository.code_fingerprint_used(fingerprint):
            raise CodeReusedError("Authorization code was already exchanged", step=HandshakeStep.CODE_REUSED)

        # 2. State lookup. A completed handshake deletes its state, so a
        # replay after success reads as unknown rather than reused.
        row = self.repository.get_state(state)
        if row is None:
            raise StateInvalidError("Unknown OAuth state", step=HandshakeStep.STATE_EXPIRED)
        if row.user_id != user_id:
            raise StateInvalidError("OAuth state was issued to another user", step=HandshakeStep.STATE_EXPIRED)
        if row.used_at is not None:
            raise StateReusedError("OAuth state was already used", step=HandshakeStep.STATE_REUSED)
        now = utcnow()
        if now - row.created_at > self.state_ttl:
            self.repository.delete_state(row.id)
            raise StateExpiredError("OAuth state has expired", step=HandshakeStep.STATE_EXPIRED)

        organization = self._organization_of(user_id)

        # 3. Consume before any network call
        if not self.repository.consume_state(row.id, now):
            raise StateReusedError("OAuth state was consumed concurrently", step=HandshakeStep.STATE_REUSED)
        _transition(user_id, HandshakeStep.CODE_RECEIVED, HandshakeStep.STATE_VALIDATED)

        # 4. Exchange
        try:
            token = await self.oauth.exchange_code(code)
        except OAuthProtocolError as e:
            raise TokenExchangeError(str(e), provider_error=e.error, step=HandshakeStep.EXCHANGE_FAILED) from e
        _transition(user_id, HandshakeStep.STATE_VALIDATED, HandshakeStep.TOKEN_EXCHANGED)

        # 5. Organization binding
        company = await self._fetch_company(token.access_token)
        expected = normalize_registration_number(organization.registration_number)
        actual = normalize_registration_number(company.get("OrganizationNumber"))
        if not expected or expected != actual:
            raise CompanyMismatchError(
                organization.registration_number or "",
                company.get("OrganizationNumber") or "",
                step=HandshakeStep.COMPANY_MISMATCH,
            )
        _transition(user_id, HandshakeStep.TOKEN_EXCHANGED, HandshakeStep.COMPANY_VALIDATED)

        # 6. Persist
        try:
            credential = self.repository.store_active_credential(
                user_id=user_id,
                organization_id=organization.id,
                access_token=self.vault.encrypt(token.access_token),
                refresh_token=self.vault.encrypt(token.refresh_token) if token.refresh_token else None,
                token_expires_at=token.expires_at_datetime,
                fortnox_company_id=actual,
                company_name=company.get("CompanyName"),
                oauth_code=fingerprint,
                code_used_at=now,
            )
        except SQLIntegrityError as e:
            if _violates(e, "oauth_code"):
                raise CodeReusedError(
                    "Authorization code was exchanged concurrently", step=HandshakeStep.CODE_REUSED
                ) from e
            raise PersistError(
                f"A concurrent connection for user {user_id} was stored first: {e.orig}",
                step=HandshakeStep.PERSIST_FAILED,
            ) from e
        except SQLAlchemyError as e:
            raise PersistError(f"Could not store credential: {e}", step=HandshakeStep.PERSIST_FAILED) from e
        _transition(user_id, HandshakeStep.COMPANY_VALIDATED, HandshakeStep.CREDENTIAL_STORED)

        # 7. Cleanup
        self.repository.delete_state(row.id)
        logger.info(
            "Connected user %s to Fortnox company %s (%s)", user_id, credential.company_name, actual
        )
        return credential

    def _organization_of(self, user_id: str) -> Organization:
        try:
            return self.repository.get_organization(self.repository.get_user_organization_id(user_id))
        except RecordNotFound as e:
            raise AuthorizationFlowError(
                str(e), step=HandshakeStep.COMPANY_MISMATCH, user_message=e.user_message
            ) from e

    async def _fetch_company(self, access_token: str) -> dict:
        client = self._client_factory(access_token)
        try:
            return await client.get_company_information()
        except FortnoxApiError as e:
            raise AuthorizationFlowError(
                f"Could not read Fortnox company information: {e}",
                step=HandshakeStep.COMPANY_MISMATCH,
                user_message="Kunde inte hämta företagsinformation från Fortnox. Försök ansluta igen.",
            ) from e
        finally:
            await client.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def disconnect(self, user_id: str) -> int:
        """Deactivate every credential of ``user_id``. Rows are kept."""
        count = self.repository.deactivate_credentials(user_id)
        logger.info("Disconnected user %s from Fortnox (%d credential(s) deactivated)", user_id, count)
        return count

    def connection_status(self, user_id: str) -> ConnectionStatus:
        credential = self.repository.active_credential_for_user(user_id)
        if credential is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            company_name=credential.company_name,
            company_id=credential.fortnox_company_id,
            connected_since=credential.created_at,
            token_expires_at=credential.token_expires_at,
        )
