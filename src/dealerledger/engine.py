"""
DealerLedger — main entry point.

The DealerLedger class wires configuration, storage, the credential vault,
the OAuth handshake, token refresh and the bookkeeping components together
so callers only deal with user ids and record ids.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from dealerledger.auth.handshake import ConnectionStatus, HandshakeManager
from dealerledger.auth.oauth2 import FortnoxOAuthClient
from dealerledger.auth.refresh import TokenRefreshSupervisor
from dealerledger.auth.vault import CredentialVault
from dealerledger.config import DealerLedgerConfig
from dealerledger.documents import DocumentStore
from dealerledger.errors import NoActiveIntegration
from dealerledger.fortnox.client import FortnoxClient
from dealerledger.storage.database import Database
from dealerledger.storage.models import FortnoxCredential
from dealerledger.storage.repository import StorageRepository
from dealerledger.sync.corrections import CorrectionVoucher, CorrectionVoucherGenerator
from dealerledger.sync.synchronizer import AccountingSynchronizer, SyncResult

logger = logging.getLogger("dealerledger")


@dataclass
class DealerLedger:
    """Fortnox bookkeeping for a dealership's inventory.

    Usage::

        from dealerledger import DealerLedger

        ledger = DealerLedger.from_config("dealerledger.yaml")
        url = ledger.begin_authorization(user_id)
        await ledger.complete_authorization(user_id, code, state)
        result = await ledger.sync_vehicle(item_id, user_id)
    """

    config: DealerLedgerConfig
    database: Database | None = None
    repository: StorageRepository = field(init=False, repr=False)
    vault: CredentialVault = field(init=False, repr=False)
    oauth: FortnoxOAuthClient = field(init=False, repr=False)
    handshake: HandshakeManager = field(init=False, repr=False)
    supervisor: TokenRefreshSupervisor = field(init=False, repr=False)
    synchronizer: AccountingSynchronizer = field(init=False, repr=False)
    corrections: CorrectionVoucherGenerator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._setup()

    @classmethod
    def from_config(cls, config_path: str | None = None, **overrides: Any) -> DealerLedger:
        """Create an instance from a config file or keyword arguments."""
        return cls(config=DealerLedgerConfig.load(config_path, **overrides))

    def _setup(self) -> None:
        if self.database is None:
            self.database = Database.from_config(self.config.database)
        self.database.create_all()

        self.repository = StorageRepository(self.database)
        self.vault = CredentialVault(self.config.security.token_encryption_key)
        self.oauth = FortnoxOAuthClient(self.config.fortnox)
        self.handshake = HandshakeManager(
            self.repository,
            self.vault,
            self.oauth,
            state_ttl_seconds=self.config.security.state_ttl_seconds,
            client_factory=self.client_for,
        )
        self.supervisor = TokenRefreshSupervisor(
            self.repository,
            self.vault,
            self.oauth,
            buffer_seconds=self.config.security.refresh_buffer_seconds,
        )
        self.synchronizer = AccountingSynchronizer(
            self.repository,
            self.supervisor,
            client_factory=self.client_for,
            vat_rate=str(self.config.sync.vat_rate),
            default_supplier_number=self.config.sync.default_supplier_number,
        )
        self.corrections = CorrectionVoucherGenerator(
            self.repository,
            self.supervisor,
            client_factory=self.client_for,
            documents=DocumentStore(self.config.sync.documents_dir),
            default_series=self.config.sync.default_voucher_series,
        )
        logger.debug("DealerLedger initialized against %s", self.database.url)

    def client_for(self, access_token: str) -> FortnoxClient:
        return FortnoxClient(self.config.fortnox, access_token)

    async def close(self) -> None:
        await self.oauth.close()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def begin_authorization(self, user_id: str) -> str:
        return self.handshake.begin_authorization(user_id)

    async def complete_authorization(self, user_id: str, code: str, state: str) -> FortnoxCredential:
        return await self.handshake.complete_authorization(user_id, code, state)

    def disconnect(self, user_id: str) -> int:
        return self.handshake.disconnect(user_id)

    def connection_status(self, user_id: str) -> ConnectionStatus:
        return self.handshake.connection_status(user_id)

    def cleanup_expired_states(self) -> int:
        return self.handshake.cleanup_expired_states()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def sync_vehicle(self, item_id: str, user_id: str, vat_treatment: str | None = None) -> SyncResult:
        return await self.synchronizer.sync_inventory_purchase(item_id, user_id, vat_treatment)

    def sync_vehicle_sync(self, item_id: str, user_id: str, vat_treatment: str | None = None) -> SyncResult:
        """Synchronous wrapper around :meth:`sync_vehicle`."""
        return asyncio.run(self.sync_vehicle(item_id, user_id, vat_treatment))

    async def sync_additional_cost(self, cost_id: str, user_id: str) -> SyncResult:
        return await self.synchronizer.sync_additional_cost(cost_id, user_id)

    async def sync_sale(self, item_id: str, user_id: str) -> SyncResult:
        return await self.synchronizer.sync_sale(item_id, user_id)

    async def reverse_voucher(
        self,
        series: str,
        number: str,
        user_id: str,
        *,
        inventory_item_id: str | None = None,
        correction_series: str | None = None,
        correction_date: date | None = None,
    ) -> CorrectionVoucher:
        return await self.corrections.reverse_voucher(
            series,
            number,
            user_id,
            inventory_item_id=inventory_item_id,
            correction_series=correction_series,
            correction_date=correction_date,
        )

    async def reverse_vehicle(self, item_id: str, user_id: str) -> CorrectionVoucher:
        return await self.corrections.reverse_inventory_item(item_id, user_id)

    async def _organization_client(self, user_id: str) -> FortnoxClient:
        organization_id = self.repository.get_user_organization_id(user_id)
        credential = self.repository.active_credential_for_organization(organization_id)
        if credential is None:
            raise NoActiveIntegration(f"No active Fortnox credential in organization {organization_id}")
        token = await self.supervisor.get_valid_access_token(credential)
        return self.client_for(token)

    async def list_accounts(self, user_id: str) -> list[dict[str, Any]]:
        """Chart of accounts of the user's connected Fortnox company."""
        client = await self._organization_client(user_id)
        try:
            return await client.list_accounts()
        finally:
            await client.close()

    async def list_suppliers(self, user_id: str) -> list[dict[str, Any]]:
        """Supplier register, for picking the supplier number of a purchase."""
        client = await self._organization_client(user_id)
        try:
            return await client.list_suppliers()
        finally:
            await client.close()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def migrate_tokens(self) -> int:
        """Encrypt every credential token still stored as plaintext.

        Returns the number of credentials rewritten.
        """
        migrated = 0
        for credential in self.repository.list_credentials():
            fields: dict[str, str] = {}
            if self.vault.needs_migration(credential.access_token):
                fields["access_token"] = self.vault.encrypt(credential.access_token)
            if self.vault.needs_migration(credential.refresh_token):
                fields["refresh_token"] = self.vault.encrypt(credential.refresh_token)
            if fields:
                self.repository.update_credential(credential.id, **fields)
                migrated += 1
                logger.info("Encrypted legacy tokens of credential %s", credential.id)
        return migrated
