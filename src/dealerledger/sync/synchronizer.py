"""
Accounting resource synchronizer — books vehicle purchases in Fortnox.

A purchase becomes (at most) one project keyed by the registration number
plus one supplier invoice whose rows depend on the VAT treatment. Steps run
strictly in order and are never retried automatically; a failed sync is
retried by calling again.

Idempotency:

* an item already ``synced`` is returned as-is without touching Fortnox;
* project creation that collides with an existing project reuses it, and
  the project number is written back before the invoice is attempted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from dealerledger.auth.refresh import TokenRefreshSupervisor
from dealerledger.errors import (
    CrossOrganizationError,
    DealerLedgerError,
    FortnoxApiError,
    NoActiveIntegration,
    UnsupportedSyncEvent,
    VatTreatmentError,
)
from dealerledger.fortnox.client import FortnoxClient
from dealerledger.storage.models import AdditionalCost, InventoryItem, SyncStatus, utcnow
from dealerledger.storage.repository import StorageRepository
from dealerledger.sync import accounts as acc
from dealerledger.sync.accounts import AccountMap
from dealerledger.sync.idempotency import DuplicatePredicate, is_duplicate_error
from dealerledger.sync.vat import VatTreatment, split_gross, to_money, vat_on_net

logger = logging.getLogger("dealerledger.sync.synchronizer")

ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


@dataclass
class InvoiceRow:
    """One debit or credit line of a supplier invoice."""

    account: int
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    project: str | None = None
    info: str | None = None

    def to_payload(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "Account": self.account,
            "Debit": float(self.debit),
            "Credit": float(self.credit),
        }
        if self.project:
            row["Project"] = self.project
        if self.info:
            row["TransactionInformation"] = self.info
        return row


def ensure_balanced(rows: list[InvoiceRow]) -> None:
    """Raise ``ValueError`` unless debits equal credits."""
    debit = sum((r.debit for r in rows), ZERO)
    credit = sum((r.credit for r in rows), ZERO)
    if debit != credit:
        raise ValueError(f"Invoice rows do not balance: debit {debit} != credit {credit}")


def build_purchase_rows(
    treatment: VatTreatment,
    purchase_price: Decimal | float | str,
    down_payment: Decimal | float | str | None,
    accounts: AccountMap,
    *,
    vat_rate: Decimal | float | str = "0.25",
    project: str | None = None,
) -> list[InvoiceRow]:
    """Supplier invoice rows for a vehicle purchase.

    Every treatment ends with a credit of the price less down payment on
    supplier debt, and a credit of the down payment (if any) on prepayments.

    Raises:
        ValueError: Non-positive price, a down payment outside ``[0, price]``,
            or rows that do not balance.
    """
    price = to_money(purchase_price)
    prepaid = to_money(down_payment)
    if price <= ZERO:
        raise ValueError(f"Purchase price must be positive, got {price}")
    if prepaid < ZERO or prepaid > price:
        raise ValueError(f"Down payment {prepaid} must be between 0 and the purchase price {price}")

    rows: list[InvoiceRow] = []

    if treatment is VatTreatment.VMB:
        rows.append(InvoiceRow(accounts.number(acc.INVENTORY_VMB), debit=price, project=project))

    elif treatment is VatTreatment.MOMS:
        net, vat = split_gross(price, vat_rate)
        rows.append(InvoiceRow(accounts.number(acc.INVENTORY_MOMS), debit=net, project=project))
        rows.append(InvoiceRow(accounts.number(acc.INPUT_VAT), debit=vat, project=project, info="Ingående moms"))

    elif treatment is VatTreatment.VMBI:
        eu_vat = vat_on_net(price, vat_rate)
        rows.append(InvoiceRow(accounts.number(acc.INVENTORY_VMB_EU), debit=price, project=project))
        rows.append(InvoiceRow(
            accounts.number(acc.CALCULATED_INPUT_VAT_EU), debit=eu_vat, project=project,
            info="Beräknad ingående moms EU",
        ))
        rows.append(InvoiceRow(
            accounts.number(acc.OUTPUT_VAT_EU), credit=eu_vat, project=project,
            info="Utgående moms EU-förvärv",
        ))

    elif treatment is VatTreatment.MOMSI:
        net, vat = split_gross(price, vat_rate)
        rows.append(InvoiceRow(accounts.number(acc.INVENTORY_MOMS_EU), debit=net, project=project))
        rows.append(InvoiceRow(accounts.number(acc.INPUT_VAT), debit=vat, project=project, info="Ingående moms"))
        rows.append(InvoiceRow(
            accounts.number(acc.EU_PURCHASES), debit=net, project=project, info="Inköp av varor från EU",
        ))
        rows.append(InvoiceRow(accounts.number(acc.EU_PURCHASES_COUNTER), credit=net, project=project))

    rows.append(InvoiceRow(
        accounts.number(acc.SUPPLIER_DEBT), credit=price - prepaid, project=project, info="Leverantörsskuld",
    ))
    if prepaid > ZERO:
        rows.append(InvoiceRow(
            accounts.number(acc.PREPAYMENT), credit=prepaid, project=project, info="Handpenning",
        ))

    ensure_balanced(rows)
    return rows


def build_additional_cost_rows(
    gross: Decimal | float | str,
    accounts: AccountMap,
    *,
    vat_rate: Decimal | float | str = "0.25",
    project: str | None = None,
    category: str | None = None,
) -> list[InvoiceRow]:
    amount = to_money(gross)
    if amount <= ZERO:
        raise ValueError(f"Additional cost must be positive, got {amount}")
    net, vat = split_gross(amount, vat_rate)
    rows = [
        InvoiceRow(
            accounts.number(acc.INVENTORY_ADDITIONAL_COSTS), debit=net, project=project,
            info=f"Påkostnad - {category}" if category else "Påkostnad",
        ),
        InvoiceRow(accounts.number(acc.INPUT_VAT), debit=vat, project=project, info="Ingående moms 25%"),
        InvoiceRow(accounts.number(acc.SUPPLIER_DEBT), credit=amount, project=project, info="Leverantörsskuld"),
    ]
    ensure_balanced(rows)
    return rows


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    """Outcome of one sync call."""

    inventory_item_id: str
    success: bool = True
    already_synced: bool = False
    invoice_number: str | None = None
    project_number: str | None = None
    vat_treatment: VatTreatment | None = None
    additional_cost_id: str | None = None
    rows: list[InvoiceRow] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------


class AccountingSynchronizer:
    """Creates Fortnox projects and supplier invoices for inventory events.

    Usage::

        sync = AccountingSynchronizer(repository, supervisor, client_factory=factory)
        result = await sync.sync_inventory_purchase(item_id, user_id)
    """

    def __init__(
        self,
        repository: StorageRepository,
        supervisor: TokenRefreshSupervisor,
        *,
        client_factory: Callable[[str], FortnoxClient],
        vat_rate: float | str = "0.25",
        default_supplier_number: str = "1",
        is_duplicate: DuplicatePredicate = is_duplicate_error,
    ) -> None:
        self.repository = repository
        self.supervisor = supervisor
        self.client_factory = client_factory
        self.vat_rate = Decimal(str(vat_rate))
        self.default_supplier_number = default_supplier_number
        self.is_duplicate = is_duplicate

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def sync_inventory_purchase(
        self,
        item_id: str,
        syncing_user_id: str,
        vat_treatment: VatTreatment | str | None = None,
    ) -> SyncResult:
        """Book a vehicle purchase.

        Raises:
            CrossOrganizationError: The vehicle belongs to another organization.
            VatTreatmentError: Unknown tag, or ``vat_treatment`` contradicts it.
            NoActiveIntegration: Nobody in the organization is connected.
            ReauthenticationRequired: The stored refresh token was rejected.
            FortnoxApiError: Fortnox refused a request or was unreachable.
            ValueError: The amounts cannot produce balanced rows.
        """
        item = self.repository.get_inventory_item(item_id)
        organization_id = self._check_organization(item, syncing_user_id)

        treatment = VatTreatment.parse(item.vat_type)
        if vat_treatment is not None and VatTreatment.parse(vat_treatment) is not treatment:
            raise VatTreatmentError(
                f"Requested VAT treatment {vat_treatment!r} does not match vehicle tag {item.vat_type!r}"
            )

        if item.fortnox_sync_status == SyncStatus.SYNCED.value:
            logger.info("Inventory item %s already synced (invoice %s)", item.id, item.fortnox_invoice_number)
            return SyncResult(
                inventory_item_id=item.id,
                already_synced=True,
                invoice_number=item.fortnox_invoice_number,
                project_number=item.fortnox_project_number,
                vat_treatment=treatment,
            )

        accounts = AccountMap(self.repository.get_account_mappings(organization_id))
        project_key = _project_key(item.registration_number) if treatment.requires_project else None
        rows = build_purchase_rows(
            treatment, item.purchase_price, item.down_payment, accounts,
            vat_rate=self.vat_rate, project=item.fortnox_project_number or project_key,
        )

        if item.fortnox_sync_status == SyncStatus.FAILED.value:
            self.repository.update_inventory_item(item.id, fortnox_sync_status=SyncStatus.PENDING.value)

        context: dict[str, Any] = {
            "inventory_item_id": item.id,
            "registration_number": item.registration_number,
            "vat_treatment": treatment.value,
        }
        try:
            credential = self._active_credential(organization_id)
            token = await self.supervisor.get_valid_access_token(credential)
            client = self.client_factory(token)
            try:
                project_number = None
                if treatment.requires_project:
                    project_number = await self.ensure_project(client, item)
                    for row in rows:
                        row.project = project_number
                payload = self._purchase_invoice(item, rows, project_number)
                context["request"] = payload
                invoice = await client.create_supplier_invoice(payload)
                invoice_number = _invoice_number(invoice)
            finally:
                await client.close()
        except DealerLedgerError as e:
            self._record_failure(item.id, syncing_user_id, "inventory_purchase", e, context)
            raise

        verification = str(invoice.get("VoucherNumber") or invoice_number)
        self.repository.update_inventory_item(
            item.id,
            fortnox_sync_status=SyncStatus.SYNCED.value,
            fortnox_invoice_number=invoice_number,
            fortnox_verification_number=verification,
            fortnox_vat_treatment=treatment.value,
            fortnox_synced_at=utcnow(),
            fortnox_synced_by_user_id=syncing_user_id,
        )
        self.repository.log_sync(
            inventory_item_id=item.id,
            user_id=item.user_id,
            synced_by_user_id=syncing_user_id,
            sync_type="inventory_purchase",
            sync_status="success",
            verification_number=verification,
            sync_data={"invoice_number": invoice_number, "project_number": project_number, **context},
        )
        logger.info(
            "Synced %s purchase of %s to Fortnox (invoice %s, project %s)",
            treatment.value, item.registration_number, invoice_number, project_number,
        )
        return SyncResult(
            inventory_item_id=item.id,
            invoice_number=invoice_number,
            project_number=project_number,
            vat_treatment=treatment,
            rows=rows,
        )

    async def ensure_project(self, client: FortnoxClient, item: InventoryItem) -> str:
        """Return the item's project number, creating the project if needed."""
        if item.fortnox_project_number:
            return item.fortnox_project_number

        key = _project_key(item.registration_number)
        description = " ".join(part for part in (item.brand, item.model) if part) or key
        start = item.purchase_date.isoformat() if item.purchase_date else None
        try:
            project = await client.create_project(key, description, start_date=start)
        except FortnoxApiError as e:
            if not self.is_duplicate(e):
                raise
            logger.info("Fortnox project %s already exists, reusing it", key)
            project = await client.get_project(key)

        number = str(project.get("ProjectNumber") or key)
        self.repository.update_inventory_item(item.id, fortnox_project_number=number)
        item.fortnox_project_number = number
        return number

    def _purchase_invoice(
        self, item: InventoryItem, rows: list[InvoiceRow], project_number: str | None
    ) -> dict[str, Any]:
        price = to_money(item.purchase_price)
        invoice_date = (item.purchase_date or date.today()).isoformat()
        payload: dict[str, Any] = {
            "SupplierNumber": item.supplier_number or self.default_supplier_number,
            "InvoiceNumber": item.registration_number,
            "InvoiceDate": invoice_date,
            "DueDate": invoice_date,
            "Total": float(price - to_money(item.down_payment)),
            "Comments": " ".join(p for p in (item.brand, item.model) if p) or item.registration_number,
            "SupplierInvoiceRows": [r.to_payload() for r in rows],
        }
        if project_number:
            payload["Project"] = project_number
        return payload

    # ------------------------------------------------------------------
    # Additional costs
    # ------------------------------------------------------------------

    async def sync_additional_cost(self, cost_id: str, syncing_user_id: str) -> SyncResult:
        """Book an additional cost (påkostnad) on the vehicle's project."""
        cost: AdditionalCost = self.repository.get_additional_cost(cost_id)
        item = self.repository.get_inventory_item(cost.inventory_item_id)
        organization_id = self._check_organization(item, syncing_user_id)
        treatment = VatTreatment.parse(item.vat_type)

        if cost.is_synced:
            return SyncResult(
                inventory_item_id=item.id,
                additional_cost_id=cost.id,
                already_synced=True,
                invoice_number=cost.fortnox_invoice_number,
                project_number=item.fortnox_project_number,
            )

        accounts = AccountMap(self.repository.get_account_mappings(organization_id))
        rows = build_additional_cost_rows(
            cost.amount, accounts, vat_rate=self.vat_rate, category=cost.category,
        )

        context: dict[str, Any] = {"additional_cost_id": cost.id, "inventory_item_id": item.id}
        try:
            credential = self._active_credential(organization_id)
            token = await self.supervisor.get_valid_access_token(credential)
            client = self.client_factory(token)
            try:
                project_number = None
                if treatment.requires_project:
                    project_number = await self.ensure_project(client, item)
                    for row in rows:
                        row.project = project_number
                cost_date = (cost.date or date.today()).isoformat()
                payload: dict[str, Any] = {
                    "SupplierNumber": cost.supplier_number or self.default_supplier_number,
                    "InvoiceNumber": f"PAK-{cost.id}",
                    "InvoiceDate": cost_date,
                    "DueDate": cost_date,
                    "Total": float(to_money(cost.amount)),
                    "Comments": f"Påkostnad för {item.registration_number} - {cost.category or 'övrigt'}",
                    "SupplierInvoiceRows": [r.to_payload() for r in rows],
                }
                if project_number:
                    payload["Project"] = project_number
                context["request"] = payload
                invoice = await client.create_supplier_invoice(payload)
                invoice_number = _invoice_number(invoice)
            finally:
                await client.close()
        except DealerLedgerError as e:
            self._record_failure(item.id, syncing_user_id, "additional_cost", e, context, mark_item=False)
            raise

        self.repository.update_additional_cost(cost.id, is_synced=True, fortnox_invoice_number=invoice_number)
        self.repository.log_sync(
            inventory_item_id=item.id,
            user_id=item.user_id,
            synced_by_user_id=syncing_user_id,
            sync_type="additional_cost",
            sync_status="success",
            verification_number=invoice_number,
            sync_data={"invoice_number": invoice_number, **context},
        )
        logger.info("Synced additional cost %s for %s (invoice %s)", cost.id, item.registration_number, invoice_number)
        return SyncResult(
            inventory_item_id=item.id,
            additional_cost_id=cost.id,
            invoice_number=invoice_number,
            project_number=project_number,
            rows=rows,
        )

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    async def sync_sale(self, item_id: str, syncing_user_id: str) -> SyncResult:
        """Sales are booked manually in Fortnox for now."""
        raise UnsupportedSyncEvent(f"Sale of inventory item {item_id} cannot be synced automatically")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_organization(self, item: InventoryItem, user_id: str) -> str:
        organization_id = self.repository.get_user_organization_id(user_id)
        if item.organization_id != organization_id:
            logger.warning(
                "User %s (org %s) tried to sync item %s of org %s",
                user_id, organization_id, item.id, item.organization_id,
            )
            raise CrossOrganizationError(
                f"Inventory item {item.id} belongs to organization {item.organization_id}, "
                f"not {organization_id}"
            )
        return organization_id

    def _active_credential(self, organization_id: str):
        credential = self.repository.active_credential_for_organization(organization_id)
        if credential is None:
            raise NoActiveIntegration(f"No active Fortnox credential in organization {organization_id}")
        return credential

    def _record_failure(
        self,
        item_id: str,
        user_id: str,
        sync_type: str,
        error: DealerLedgerError,
        context: dict[str, Any],
        *,
        mark_item: bool = True,
    ) -> None:
        logger.error("Fortnox %s sync of item %s failed: %s", sync_type, item_id, error)
        error_context = dict(context)
        if isinstance(error, FortnoxApiError):
            error_context.update(status=error.status, code=error.code, endpoint=error.endpoint)
        self.repository.log_error(user_id, f"{sync_type}_error", str(error), error_context)
        self.repository.log_sync(
            inventory_item_id=item_id,
            user_id=user_id,
            synced_by_user_id=user_id,
            sync_type=sync_type,
            sync_status="failed",
            sync_data=context,
            error_message=str(error),
        )
        if mark_item:
            current = self.repository.get_inventory_item(item_id)
            if current.fortnox_sync_status != SyncStatus.SYNCED.value:
                self.repository.update_inventory_item(item_id, fortnox_sync_status=SyncStatus.FAILED.value)


def _project_key(registration_number: str) -> str:
    return "".join(registration_number.split()).upper()


def _invoice_number(invoice: dict[str, Any]) -> str:
    number = invoice.get("GivenNumber") or invoice.get("DocumentNumber")
    if number in (None, ""):
        raise FortnoxApiError(200, "Supplier invoice response carried no invoice number", endpoint="supplierinvoices")
    return str(number)
