"""
DealerLedger configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from dealerledger.errors import ConfigurationError

# Least-privilege scopes: bookkeeping (vouchers), supplier invoices,
# projects, company info for the organization check, inbox for attachments.
DEFAULT_SCOPES = [
    "bookkeeping",
    "supplierinvoice",
    "supplier",
    "project",
    "companyinformation",
    "inbox",
    "settings",
]


class FortnoxConfig(BaseModel):
    """Fortnox OAuth2 application and API settings."""

    client_id: str | None = Field(default=None, description="OAuth2 client id (or set env var)")
    client_secret: str | None = Field(default=None, description="OAuth2 client secret (or set env var)")
    redirect_uri: str = Field(
        default="https://app.example.com/fortnox/callback",
        description="Pre-registered, stable callback address",
    )
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    auth_url: str = "https://apps.fortnox.se/oauth-v1/auth"
    token_url: str = "https://apps.fortnox.se/oauth-v1/token"
    api_url: str = "https://api.fortnox.se/3"
    timeout: float = Field(default=30.0, description="Request timeout in seconds")

    def require_client_credentials(self) -> tuple[str, str]:
        """Return ``(client_id, client_secret)`` or fail with a deployment error."""
        if not self.client_id:
            raise ConfigurationError("Fortnox client id is not configured (FORTNOX_CLIENT_ID)")
        if not self.client_secret:
            raise ConfigurationError("Fortnox client secret is not configured (FORTNOX_CLIENT_SECRET)")
        return self.client_id, self.client_secret


class SecurityConfig(BaseModel):
    """Token encryption and OAuth state settings."""

    token_encryption_key: str | None = Field(
        default=None,
        description="Base64-encoded 256-bit AES key for credential encryption",
    )
    state_ttl_seconds: int = Field(default=600, ge=1, description="Authorization state lifetime")
    refresh_buffer_seconds: int = Field(
        default=300, ge=0, description="Refresh access tokens this long before expiry"
    )


class DatabaseConfig(BaseModel):
    """Relational store settings (any SQLAlchemy URL)."""

    url: str = Field(default="sqlite:///dealerledger.db")
    echo: bool = False


class SyncConfig(BaseModel):
    """Bookkeeping defaults used when posting to Fortnox."""

    vat_rate: float = Field(default=0.25, ge=0.0, lt=1.0)
    default_supplier_number: str = "1"
    default_voucher_series: str = "A"
    documents_dir: str = Field(
        default="./purchase-docs",
        description="Root directory of stored purchase documentation",
    )


class DealerLedgerConfig(BaseModel):
    """Root configuration for DealerLedger."""

    fortnox: FortnoxConfig = Field(default_factory=FortnoxConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> DealerLedgerConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        env_client_id = os.environ.get("FORTNOX_CLIENT_ID")
        env_client_secret = os.environ.get("FORTNOX_CLIENT_SECRET")
        env_redirect = os.environ.get("FORTNOX_REDIRECT_URI")
        env_key = os.environ.get("FORTNOX_TOKEN_ENCRYPTION_KEY")
        env_db = os.environ.get("DEALERLEDGER_DATABASE_URL")

        if env_client_id or env_client_secret or env_redirect:
            fortnox = data.get("fortnox", {})
            if env_client_id:
                fortnox["client_id"] = env_client_id
            if env_client_secret:
                fortnox["client_secret"] = env_client_secret
            if env_redirect:
                fortnox["redirect_uri"] = env_redirect
            data["fortnox"] = fortnox

        if env_key:
            security = data.get("security", {})
            security["token_encryption_key"] = env_key
            data["security"] = security

        if env_db:
            database = data.get("database", {})
            database["url"] = env_db
            data["database"] = database

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)
