"""Tests for the accounting resource synchronizer."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import ORG_A, add_credential, add_item, make_fortnox_client

from dealerledger.errors import (
    CrossOrganizationError,
    FortnoxApiError,
    NoActiveIntegration,
    UnsupportedSyncEvent,
    VatTreatmentError,
)
from dealerledger.storage import AccountMapping, AdditionalCost
from dealerledger.sync.synchronizer import AccountingSynchronizer
from dealerledger.sync.vat import VatTreatment


class _Harness:
    def __init__(self, repository) -> None:
        self.repository = repository
        self.supervisor = MagicMock()
        self.supervisor.get_valid_access_token = AsyncMock(return_value="access-token")
        self.fortnox = make_fortnox_client(
            create_project={"ProjectNumber": "ABC123"},
            get_project={"ProjectNumber": "ABC123"},
            create_supplier_invoice={"GivenNumber": 77},
        )
        self.factory = MagicMock(return_value=self.fortnox)
        self.sync = AccountingSynchronizer(repository, self.supervisor, client_factory=self.factory)

    def invoice_payload(self) -> dict:
        return self.fortnox.create_supplier_invoice.call_args[0][0]


@pytest.fixture
def harness(repository) -> _Harness:
    return _Harness(repository)


@pytest.fixture
def connected(repository):
    # Connected by a colleague in the same organization
    return add_credential(repository, user_id="user-2")


class TestPurchaseScenario:
    @pytest.mark.asyncio
    async def test_vmb_purchase(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository, purchase_date=date(2024, 5, 1))

        result = await harness.sync.sync_inventory_purchase(item_id, "user-1")

        assert result.success
        assert result.invoice_number == "77"
        assert result.project_number == "ABC123"
        assert result.vat_treatment is VatTreatment.VMB

        harness.fortnox.create_project.assert_awaited_once_with("ABC123", "Volvo V70", start_date="2024-05-01")
        harness.fortnox.create_supplier_invoice.assert_awaited_once()
        payload = harness.invoice_payload()
        assert payload["Project"] == "ABC123"
        assert payload["InvoiceNumber"] == "ABC123"
        assert payload["InvoiceDate"] == "2024-05-01"
        assert payload["Total"] == 150000.0
        assert payload["SupplierInvoiceRows"] == [
            {"Account": 1410, "Debit": 150000.0, "Credit": 0.0, "Project": "ABC123"},
            {
                "Account": 2440, "Debit": 0.0, "Credit": 150000.0, "Project": "ABC123",
                "TransactionInformation": "Leverantörsskuld",
            },
        ]

        item = harness.repository.get_inventory_item(item_id)
        assert item.fortnox_sync_status == "synced"
        assert item.fortnox_invoice_number == "77"
        assert item.fortnox_project_number == "ABC123"
        assert item.fortnox_vat_treatment == "VMB"
        assert item.fortnox_synced_by_user_id == "user-1"
        assert item.fortnox_synced_at is not None

        log = harness.repository.list_sync_log(item_id)
        assert [(e.sync_type, e.sync_status) for e in log] == [("inventory_purchase", "success")]

    @pytest.mark.asyncio
    async def test_token_comes_from_organization_credential(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        await harness.sync.sync_inventory_purchase(item_id, "user-1")
        credential = harness.supervisor.get_valid_access_token.call_args[0][0]
        assert credential.id == connected.id
        harness.factory.assert_called_once_with("access-token")
        harness.fortnox.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_already_synced_makes_no_calls(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        await harness.sync.sync_inventory_purchase(item_id, "user-1")

        again = await harness.sync.sync_inventory_purchase(item_id, "user-1")
        assert again.already_synced
        assert again.invoice_number == "77"
        assert harness.fortnox.create_project.await_count == 1
        assert harness.fortnox.create_supplier_invoice.await_count == 1

    @pytest.mark.asyncio
    async def test_moms_has_no_project(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository, vat_type="MOMS", purchase_price=Decimal("125000"))
        result = await harness.sync.sync_inventory_purchase(item_id, "user-1")

        harness.fortnox.create_project.assert_not_called()
        assert result.project_number is None
        payload = harness.invoice_payload()
        assert "Project" not in payload
        assert [(r["Account"], r["Debit"], r["Credit"]) for r in payload["SupplierInvoiceRows"]] == [
            (1411, 100000.0, 0.0),
            (2641, 25000.0, 0.0),
            (2440, 0.0, 125000.0),
        ]

    @pytest.mark.asyncio
    async def test_down_payment_row(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository, down_payment=Decimal("30000"))
        await harness.sync.sync_inventory_purchase(item_id, "user-1")
        payload = harness.invoice_payload()
        assert payload["Total"] == 120000.0
        assert [(r["Account"], r["Credit"]) for r in payload["SupplierInvoiceRows"][1:]] == [
            (2440, 120000.0),
            (1680, 30000.0),
        ]

    @pytest.mark.asyncio
    async def test_account_mapping_override(self, harness: _Harness, connected, database) -> None:
        with database.session() as session, session.begin():
            session.add(AccountMapping(organization_id=ORG_A, account_name="Lager - VMB-bilar", account_number="1419"))
        item_id = add_item(harness.repository)
        await harness.sync.sync_inventory_purchase(item_id, "user-1")
        assert harness.invoice_payload()["SupplierInvoiceRows"][0]["Account"] == 1419


class TestIdempotentProject:
    @pytest.mark.asyncio
    async def test_duplicate_project_is_reused(self, harness: _Harness, connected) -> None:
        harness.fortnox.create_project.side_effect = FortnoxApiError(
            400, "Projektnummer används redan", code=2001182, endpoint="projects"
        )
        item_id = add_item(harness.repository)

        result = await harness.sync.sync_inventory_purchase(item_id, "user-1")

        harness.fortnox.get_project.assert_awaited_once_with("ABC123")
        assert result.project_number == "ABC123"
        assert harness.invoice_payload()["Project"] == "ABC123"
        assert harness.repository.get_inventory_item(item_id).fortnox_sync_status == "synced"

    @pytest.mark.asyncio
    async def test_custom_duplicate_predicate(self, repository, connected) -> None:
        harness = _Harness(repository)
        harness.sync = AccountingSynchronizer(
            repository, harness.supervisor, client_factory=harness.factory,
            is_duplicate=lambda e: e.code == 999,
        )
        harness.fortnox.create_project.side_effect = FortnoxApiError(400, "Conflict", code=999)
        item_id = add_item(repository)
        await harness.sync.sync_inventory_purchase(item_id, "user-1")
        harness.fortnox.get_project.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_after_invoice_failure_reuses_project(self, harness: _Harness, connected) -> None:
        harness.fortnox.create_supplier_invoice.side_effect = [
            FortnoxApiError(400, "Leverantören finns inte", code=2000433, endpoint="supplierinvoices"),
            {"GivenNumber": 78},
        ]
        item_id = add_item(harness.repository)

        with pytest.raises(FortnoxApiError):
            await harness.sync.sync_inventory_purchase(item_id, "user-1")
        item = harness.repository.get_inventory_item(item_id)
        assert item.fortnox_sync_status == "failed"
        assert item.fortnox_project_number == "ABC123"
        assert item.fortnox_invoice_number is None

        result = await harness.sync.sync_inventory_purchase(item_id, "user-1")
        assert result.invoice_number == "78"
        assert harness.fortnox.create_project.await_count == 1
        assert harness.repository.get_inventory_item(item_id).fortnox_sync_status == "synced"

        log = harness.repository.list_sync_log(item_id)
        assert [e.sync_status for e in log] == ["failed", "success"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_cross_organization(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        with pytest.raises(CrossOrganizationError):
            await harness.sync.sync_inventory_purchase(item_id, "user-3")
        harness.factory.assert_not_called()
        item = harness.repository.get_inventory_item(item_id)
        assert item.fortnox_sync_status == "pending"

    @pytest.mark.asyncio
    async def test_contradicting_vat_treatment(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        with pytest.raises(VatTreatmentError):
            await harness.sync.sync_inventory_purchase(item_id, "user-1", vat_treatment="MOMS")
        harness.factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_matching_vat_treatment(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        result = await harness.sync.sync_inventory_purchase(item_id, "user-1", vat_treatment="VMB")
        assert result.success

    @pytest.mark.asyncio
    async def test_unknown_vat_tag(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository, vat_type="EXPORT")
        with pytest.raises(VatTreatmentError):
            await harness.sync.sync_inventory_purchase(item_id, "user-1")

    @pytest.mark.asyncio
    async def test_no_active_integration(self, harness: _Harness) -> None:
        item_id = add_item(harness.repository)
        with pytest.raises(NoActiveIntegration):
            await harness.sync.sync_inventory_purchase(item_id, "user-1")
        assert harness.repository.get_inventory_item(item_id).fortnox_sync_status == "failed"
        errors = harness.repository.list_errors("user-1")
        assert [e.type for e in errors] == ["inventory_purchase_error"]

    @pytest.mark.asyncio
    async def test_invalid_amounts_fail_before_network(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository, purchase_price=Decimal("100"), down_payment=Decimal("200"))
        with pytest.raises(ValueError):
            await harness.sync.sync_inventory_purchase(item_id, "user-1")
        harness.supervisor.get_valid_access_token.assert_not_called()
        harness.factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_project_error_is_logged(self, harness: _Harness, connected) -> None:
        harness.fortnox.create_project.side_effect = FortnoxApiError(
            400, "Ogiltigt projektnummer", code=2000001, endpoint="projects"
        )
        item_id = add_item(harness.repository)
        with pytest.raises(FortnoxApiError):
            await harness.sync.sync_inventory_purchase(item_id, "user-1")

        harness.fortnox.create_supplier_invoice.assert_not_called()
        errors = harness.repository.list_errors("user-1")
        assert errors[0].context["code"] == 2000001
        assert errors[0].context["registration_number"] == "ABC123"
        log = harness.repository.list_sync_log(item_id)
        assert log[0].sync_status == "failed"
        assert "Ogiltigt projektnummer" in log[0].error_message

    @pytest.mark.asyncio
    async def test_sale_is_not_automated(self, harness: _Harness) -> None:
        with pytest.raises(UnsupportedSyncEvent):
            await harness.sync.sync_sale("any", "user-1")


class TestAdditionalCost:
    def _add_cost(self, repository, item_id: str, **fields) -> str:
        values = {"inventory_item_id": item_id, "amount": Decimal("1250"), "category": "Däck", "date": date(2024, 6, 1)}
        values.update(fields)
        cost = AdditionalCost(**values)
        with repository.database.session() as session, session.begin():
            session.add(cost)
        return cost.id

    @pytest.mark.asyncio
    async def test_books_cost_on_vehicle_project(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        cost_id = self._add_cost(harness.repository, item_id)

        result = await harness.sync.sync_additional_cost(cost_id, "user-1")

        assert result.invoice_number == "77"
        assert result.project_number == "ABC123"
        payload = harness.invoice_payload()
        assert payload["InvoiceNumber"] == f"PAK-{cost_id}"
        assert payload["Total"] == 1250.0
        assert payload["Project"] == "ABC123"
        assert [(r["Account"], r["Debit"], r["Credit"]) for r in payload["SupplierInvoiceRows"]] == [
            (1414, 1000.0, 0.0),
            (2641, 250.0, 0.0),
            (2440, 0.0, 1250.0),
        ]
        cost = harness.repository.get_additional_cost(cost_id)
        assert cost.is_synced
        assert cost.fortnox_invoice_number == "77"

    @pytest.mark.asyncio
    async def test_already_synced_cost(self, harness: _Harness, connected) -> None:
        item_id = add_item(harness.repository)
        cost_id = self._add_cost(harness.repository, item_id, is_synced=True, fortnox_invoice_number="12")
        result = await harness.sync.sync_additional_cost(cost_id, "user-1")
        assert result.already_synced
        harness.factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_cost_failure_leaves_vehicle_status(self, harness: _Harness, connected) -> None:
        harness.fortnox.create_supplier_invoice.side_effect = FortnoxApiError(500, "Internal error")
        item_id = add_item(harness.repository)
        cost_id = self._add_cost(harness.repository, item_id)
        with pytest.raises(FortnoxApiError):
            await harness.sync.sync_additional_cost(cost_id, "user-1")
        assert harness.repository.get_inventory_item(item_id).fortnox_sync_status == "pending"
        assert harness.repository.get_additional_cost(cost_id).is_synced is False
