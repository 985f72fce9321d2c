"""
Relational models — credentials, OAuth states, sync bookkeeping tables,
and the inventory-side records the engine reads and writes back to.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class SyncStatus(str, Enum):
    """Fortnox sync status of an inventory item."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    registration_number = Column(String(32), nullable=True)  # organisationsnummer, e.g. 556677-8899
    created_at = Column(DateTime, default=utcnow, nullable=False)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=True)


class InventoryItem(Base):
    """A vehicle in stock, including its Fortnox sync record."""

    __tablename__ = "inventory_items"

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    registration_number = Column(String(16), nullable=False)
    brand = Column(String(64), nullable=True)
    model = Column(String(64), nullable=True)
    purchase_price = Column(Numeric(12, 2), nullable=False)
    purchase_date = Column(Date, nullable=True)
    vat_type = Column(String(64), nullable=True)
    down_payment = Column(Numeric(12, 2), nullable=False, default=0)
    supplier_number = Column(String(32), nullable=True)
    purchase_documentation = Column(String(512), nullable=True)

    # Sync record
    fortnox_sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    fortnox_verification_number = Column(String(32), nullable=True)
    fortnox_project_number = Column(String(32), nullable=True)
    fortnox_invoice_number = Column(String(32), nullable=True)
    fortnox_vat_treatment = Column(String(8), nullable=True)
    fortnox_synced_at = Column(DateTime, nullable=True)
    fortnox_synced_by_user_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    additional_costs = relationship("AdditionalCost", back_populates="inventory_item")


class AdditionalCost(Base):
    """A cost added to a vehicle after purchase (påkostnad), VAT included."""

    __tablename__ = "additional_costs"

    id = Column(String(36), primary_key=True, default=_new_id)
    inventory_item_id = Column(String(36), ForeignKey("inventory_items.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=True)
    category = Column(String(64), nullable=True)
    supplier_number = Column(String(32), nullable=True)
    fortnox_invoice_number = Column(String(32), nullable=True)
    is_synced = Column(Boolean, nullable=False, default=False)

    inventory_item = relationship("InventoryItem", back_populates="additional_costs")


class AccountMapping(Base):
    """Organization-specific chart-of-accounts override."""

    __tablename__ = "account_mappings"
    __table_args__ = (UniqueConstraint("organization_id", "account_name"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    account_name = Column(String(128), nullable=False)
    account_number = Column(String(8), nullable=False)


# ---------------------------------------------------------------------------
# Engine-owned tables
# ---------------------------------------------------------------------------


class FortnoxCredential(Base):
    """OAuth credential for one user of one organization.

    Tokens are stored encrypted. ``oauth_code`` holds a SHA-256 fingerprint
    of the authorization code that created the row; the unique constraint
    makes a second exchange of the same code impossible to persist.
    """

    __tablename__ = "fortnox_credentials"
    __table_args__ = (
        # At most one active credential per user
        Index(
            "uq_active_credential_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    fortnox_company_id = Column(String(32), nullable=True)
    company_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    oauth_code = Column(String(64), nullable=True, unique=True)
    code_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<FortnoxCredential user={self.user_id} active={self.is_active}>"


class OAuthState(Base):
    """Single-use CSRF nonce for one authorization attempt."""

    __tablename__ = "fortnox_oauth_states"

    id = Column(String(36), primary_key=True, default=_new_id)
    state = Column(String(128), nullable=False, unique=True, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    used_at = Column(DateTime, nullable=True)


class SyncLogEntry(Base):
    __tablename__ = "fortnox_sync_log"

    id = Column(String(36), primary_key=True, default=_new_id)
    inventory_item_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    synced_by_user_id = Column(String(36), nullable=True)
    sync_type = Column(String(64), nullable=False)
    sync_status = Column(String(16), nullable=False)  # success | failed
    fortnox_verification_number = Column(String(32), nullable=True)
    sync_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class ErrorLogEntry(Base):
    __tablename__ = "fortnox_errors_log"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)


class CorrectionRecord(Base):
    """Maps an original voucher to the reversal that cancelled it. Insert-only."""

    __tablename__ = "fortnox_corrections"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    original_series = Column(String(8), nullable=False)
    original_number = Column(String(32), nullable=False)
    correction_series = Column(String(8), nullable=False)
    correction_number = Column(String(32), nullable=False)
    correction_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
