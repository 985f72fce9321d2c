"""Storage package — relational models and the repository used by the engine."""
from dealerledger.storage.database import Database
from dealerledger.storage.models import (
    AccountMapping,
    AdditionalCost,
    Base,
    CorrectionRecord,
    ErrorLogEntry,
    FortnoxCredential,
    InventoryItem,
    OAuthState,
    Organization,
    SyncLogEntry,
    SyncStatus,
    UserProfile,
)
from dealerledger.storage.repository import StorageRepository

__all__ = [
    "AccountMapping",
    "AdditionalCost",
    "Base",
    "CorrectionRecord",
    "Database",
    "ErrorLogEntry",
    "FortnoxCredential",
    "InventoryItem",
    "OAuthState",
    "Organization",
    "StorageRepository",
    "SyncLogEntry",
    "SyncStatus",
    "UserProfile",
]
