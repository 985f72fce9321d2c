"""Shared fixtures: in-memory database, seeded organizations, vault, config."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from dealerledger.auth.vault import CredentialVault
from dealerledger.config import FortnoxConfig
from dealerledger.storage import (
    Database,
    InventoryItem,
    Organization,
    StorageRepository,
    UserProfile,
)
from dealerledger.storage.models import utcnow

ORG_A = "org-a"
ORG_B = "org-b"


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def repository(database: Database) -> StorageRepository:
    with database.session() as session, session.begin():
        session.add_all([
            Organization(id=ORG_A, name="Org A", registration_number="556677-8899"),
            Organization(id=ORG_B, name="Org B", registration_number="556000-1111"),
            UserProfile(user_id="user-1", organization_id=ORG_A, full_name="Anna"),
            UserProfile(user_id="user-2", organization_id=ORG_A, full_name="Bo"),
            UserProfile(user_id="user-3", organization_id=ORG_B, full_name="Cecilia"),
        ])
    return StorageRepository(database)


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(CredentialVault.generate_key())


@pytest.fixture
def fortnox_config() -> FortnoxConfig:
    return FortnoxConfig(
        client_id="client-123",
        client_secret="secret-456",
        redirect_uri="https://dealer.example.com/fortnox/callback",
    )


def make_response(status_code: int = 200, body: Any = None, text: str | None = None) -> MagicMock:
    """A stand-in for ``httpx.Response``."""
    resp = MagicMock()
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
        resp.content = (text or "").encode()
    else:
        resp.json.return_value = body
        resp.text = text if text is not None else str(body)
        resp.content = b"{...}"
    return resp


def make_fortnox_client(**methods: Any) -> MagicMock:
    """A FortnoxClient double whose API methods are AsyncMocks."""
    client = MagicMock()
    client.close = AsyncMock()
    for name, value in methods.items():
        if isinstance(value, BaseException) or (isinstance(value, type) and issubclass(value, BaseException)):
            setattr(client, name, AsyncMock(side_effect=value))
        else:
            setattr(client, name, AsyncMock(return_value=value))
    return client


def add_item(repository: StorageRepository, **fields: Any) -> str:
    values: dict[str, Any] = {
        "organization_id": ORG_A,
        "user_id": "user-1",
        "registration_number": "ABC123",
        "brand": "Volvo",
        "model": "V70",
        "purchase_price": Decimal("150000.00"),
        "vat_type": "VMB",
        "down_payment": Decimal("0.00"),
    }
    values.update(fields)
    item = InventoryItem(**values)
    with repository.database.session() as session, session.begin():
        session.add(item)
    return item.id


def add_credential(repository: StorageRepository, user_id: str = "user-1", **fields: Any):
    values: dict[str, Any] = {
        "user_id": user_id,
        "organization_id": ORG_A,
        "access_token": "stored-access",
        "refresh_token": "stored-refresh",
        "token_expires_at": utcnow() + timedelta(hours=1),
        "fortnox_company_id": "5566778899",
        "company_name": "Org A AB",
    }
    values.update(fields)
    return repository.store_active_credential(**values)
