"""
Storage repository — every read and write the engine performs.

Each public method is one short unit of work in its own session. Nothing
is cached: the active credential in particular is re-read on every call,
because token refresh mutates it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from dealerledger.errors import RecordNotFound
from dealerledger.storage.database import Database
from dealerledger.storage.models import (
    AccountMapping,
    AdditionalCost,
    CorrectionRecord,
    ErrorLogEntry,
    FortnoxCredential,
    InventoryItem,
    OAuthState,
    Organization,
    SyncLogEntry,
    UserProfile,
    utcnow,
)

logger = logging.getLogger("dealerledger.storage.repository")


class StorageRepository:
    """Query and persistence helpers on top of a :class:`Database`."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------------------------------------------------
    # Organizations and collaborator records
    # ------------------------------------------------------------------

    def get_user_organization_id(self, user_id: str) -> str:
        with self.database.session() as session:
            org_id = session.scalar(
                select(UserProfile.organization_id).where(UserProfile.user_id == user_id)
            )
        if org_id is None:
            raise RecordNotFound(
                f"No profile for user {user_id}",
                user_message="Användarprofilen kunde inte hittas.",
            )
        return org_id

    def get_organization(self, organization_id: str) -> Organization:
        with self.database.session() as session:
            org = session.get(Organization, organization_id)
        if org is None:
            raise RecordNotFound(
                f"Organization {organization_id} not found",
                user_message="Organisationen kunde inte hittas.",
            )
        return org

    def get_inventory_item(self, item_id: str) -> InventoryItem:
        with self.database.session() as session:
            item = session.get(InventoryItem, item_id)
        if item is None:
            raise RecordNotFound(
                f"Inventory item {item_id} not found",
                user_message="Fordonet kunde inte hittas.",
            )
        return item

    def get_additional_cost(self, cost_id: str) -> AdditionalCost:
        with self.database.session() as session:
            cost = session.get(AdditionalCost, cost_id)
        if cost is None:
            raise RecordNotFound(
                f"Additional cost {cost_id} not found",
                user_message="Påkostnaden kunde inte hittas.",
            )
        return cost

    def get_account_mappings(self, organization_id: str) -> dict[str, str]:
        """Return ``{account_name: account_number}`` for an organization."""
        with self.database.session() as session:
            rows = session.execute(
                select(AccountMapping.account_name, AccountMapping.account_number).where(
                    AccountMapping.organization_id == organization_id
                )
            ).all()
        return {name: number for name, number in rows}

    def update_inventory_item(self, item_id: str, **fields: Any) -> None:
        with self.database.session() as session, session.begin():
            session.execute(update(InventoryItem).where(InventoryItem.id == item_id).values(**fields))

    def update_additional_cost(self, cost_id: str, **fields: Any) -> None:
        with self.database.session() as session, session.begin():
            session.execute(update(AdditionalCost).where(AdditionalCost.id == cost_id).values(**fields))

    # ------------------------------------------------------------------
    # OAuth states
    # ------------------------------------------------------------------

    def purge_states_before(self, cutoff: datetime) -> int:
        """Delete states created before ``cutoff``. Returns the number removed."""
        with self.database.session() as session, session.begin():
            result = session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        return result.rowcount or 0

    def add_state(self, state: str, user_id: str) -> OAuthState:
        row = OAuthState(state=state, user_id=user_id, created_at=utcnow())
        with self.database.session() as session, session.begin():
            session.add(row)
        return row

    def get_state(self, state: str) -> OAuthState | None:
        with self.database.session() as session:
            return session.scalar(select(OAuthState).where(OAuthState.state == state))

    def consume_state(self, state_id: str, used_at: datetime) -> bool:
        """Mark a state used. False when another caller got there first."""
        with self.database.session() as session, session.begin():
            result = session.execute(
                update(OAuthState)
                .where(OAuthState.id == state_id, OAuthState.used_at.is_(None))
                .values(used_at=used_at)
            )
        return result.rowcount == 1

    def delete_state(self, state_id: str) -> None:
        with self.database.session() as session, session.begin():
            session.execute(delete(OAuthState).where(OAuthState.id == state_id))

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def code_fingerprint_used(self, fingerprint: str) -> bool:
        with self.database.session() as session:
            found = session.scalar(
                select(FortnoxCredential.id).where(FortnoxCredential.oauth_code == fingerprint)
            )
        return found is not None

    def store_active_credential(self, **fields: Any) -> FortnoxCredential:
        """Deactivate the user's credentials and insert a new active one, atomically."""
        credential = FortnoxCredential(is_active=True, **fields)
        with self.database.session() as session, session.begin():
            session.execute(
                update(FortnoxCredential)
                .where(
                    FortnoxCredential.user_id == credential.user_id,
                    FortnoxCredential.is_active.is_(True),
                )
                .values(is_active=False, updated_at=utcnow())
            )
            session.add(credential)
        return credential

    def deactivate_credentials(self, user_id: str) -> int:
        with self.database.session() as session, session.begin():
            result = session.execute(
                update(FortnoxCredential)
                .where(FortnoxCredential.user_id == user_id, FortnoxCredential.is_active.is_(True))
                .values(is_active=False, updated_at=utcnow())
            )
        return result.rowcount or 0

    def get_credential(self, credential_id: str) -> FortnoxCredential | None:
        with self.database.session() as session:
            return session.get(FortnoxCredential, credential_id)

    def active_credential_for_user(self, user_id: str) -> FortnoxCredential | None:
        with self.database.session() as session:
            return session.scalar(
                select(FortnoxCredential)
                .where(FortnoxCredential.user_id == user_id, FortnoxCredential.is_active.is_(True))
                .order_by(FortnoxCredential.created_at.desc())
                .limit(1)
            )

    def active_credential_for_organization(self, organization_id: str) -> FortnoxCredential | None:
        """Latest active credential held by any member of the organization."""
        with self.database.session() as session:
            return session.scalar(
                select(FortnoxCredential)
                .join(UserProfile, UserProfile.user_id == FortnoxCredential.user_id)
                .where(
                    UserProfile.organization_id == organization_id,
                    FortnoxCredential.is_active.is_(True),
                )
                .order_by(FortnoxCredential.created_at.desc())
                .limit(1)
            )

    def list_credentials(self) -> list[FortnoxCredential]:
        with self.database.session() as session:
            return list(session.scalars(select(FortnoxCredential)))

    def update_credential(self, credential_id: str, **fields: Any) -> None:
        fields.setdefault("updated_at", utcnow())
        with self.database.session() as session, session.begin():
            session.execute(
                update(FortnoxCredential).where(FortnoxCredential.id == credential_id).values(**fields)
            )

    # ------------------------------------------------------------------
    # Operator-facing logs
    # ------------------------------------------------------------------

    def log_sync(
        self,
        *,
        inventory_item_id: str,
        user_id: str,
        sync_type: str,
        sync_status: str,
        synced_by_user_id: str | None = None,
        verification_number: str | None = None,
        sync_data: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        entry = SyncLogEntry(
            inventory_item_id=inventory_item_id,
            user_id=user_id,
            synced_by_user_id=synced_by_user_id,
            sync_type=sync_type,
            sync_status=sync_status,
            fortnox_verification_number=verification_number,
            sync_data=sync_data,
            error_message=error_message,
        )
        with self.database.session() as session, session.begin():
            session.add(entry)

    def log_error(
        self,
        user_id: str,
        error_type: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Write an error-log row. A failure here is logged, not raised."""
        entry = ErrorLogEntry(user_id=user_id, type=error_type, message=message, context=context)
        try:
            with self.database.session() as session, session.begin():
                session.add(entry)
        except SQLAlchemyError:
            logger.exception("Failed to write Fortnox error log entry (%s)", error_type)

    def add_correction(
        self,
        *,
        user_id: str,
        original_series: str,
        original_number: str,
        correction_series: str,
        correction_number: str,
        correction_date: date,
    ) -> CorrectionRecord:
        record = CorrectionRecord(
            user_id=user_id,
            original_series=original_series,
            original_number=original_number,
            correction_series=correction_series,
            correction_number=correction_number,
            correction_date=correction_date,
        )
        with self.database.session() as session, session.begin():
            session.add(record)
        return record

    def list_sync_log(self, inventory_item_id: str) -> list[SyncLogEntry]:
        with self.database.session() as session:
            return list(
                session.scalars(
                    select(SyncLogEntry)
                    .where(SyncLogEntry.inventory_item_id == inventory_item_id)
                    .order_by(SyncLogEntry.created_at)
                )
            )

    def list_errors(self, user_id: str) -> list[ErrorLogEntry]:
        with self.database.session() as session:
            return list(
                session.scalars(
                    select(ErrorLogEntry)
                    .where(ErrorLogEntry.user_id == user_id)
                    .order_by(ErrorLogEntry.timestamp)
                )
            )

    def list_corrections(self, user_id: str) -> list[CorrectionRecord]:
        with self.database.session() as session:
            return list(
                session.scalars(select(CorrectionRecord).where(CorrectionRecord.user_id == user_id))
            )
