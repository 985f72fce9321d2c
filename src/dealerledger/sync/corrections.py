"""
Correction voucher generator — cancels a booked voucher.

Posted vouchers cannot be changed in Fortnox. A correction is a new voucher
whose rows mirror the original with debit and credit swapped, so the two
net to zero per account, project and cost center. Every correction is
recorded locally in ``fortnox_corrections``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from dealerledger.auth.refresh import TokenRefreshSupervisor
from dealerledger.documents import DocumentStore
from dealerledger.errors import (
    CrossOrganizationError,
    DealerLedgerError,
    FortnoxApiError,
    NoActiveIntegration,
    VoucherNotFound,
)
from dealerledger.fortnox.client import FortnoxClient
from dealerledger.storage.models import SyncStatus
from dealerledger.storage.repository import StorageRepository

logger = logging.getLogger("dealerledger.sync.corrections")


@dataclass
class CorrectionVoucher:
    original_series: str
    original_number: str
    correction_series: str
    correction_number: str
    correction_date: date
    rows: list[dict[str, Any]] = field(default_factory=list)
    attachment_connected: bool = False


def _amount(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    return float(value)


def build_mirror_rows(voucher: dict[str, Any], series: str, number: str | int) -> list[dict[str, Any]]:
    """Rows that cancel ``voucher``. Zero and removed rows are dropped.

    Raises:
        ValueError: Nothing is left to reverse.
    """
    rows: list[dict[str, Any]] = []
    for row in voucher.get("VoucherRows") or []:
        if row.get("Removed"):
            continue
        debit, credit = _amount(row.get("Debit")), _amount(row.get("Credit"))
        if debit == 0 and credit == 0:
            continue
        mirrored: dict[str, Any] = {
            "Account": row["Account"],
            "Debit": credit,
            "Credit": debit,
            "TransactionInformation": f"Makulerar rad från {series}-{number}",
        }
        if (row.get("Project") or "").strip():
            mirrored["Project"] = row["Project"]
        if (row.get("CostCenter") or "").strip():
            mirrored["CostCenter"] = row["CostCenter"]
        rows.append(mirrored)

    if not rows:
        raise ValueError(f"Voucher {series}-{number} has no non-zero rows to reverse")
    return rows


class CorrectionVoucherGenerator:
    """Posts reversal vouchers and optionally attaches the purchase documents.

    Usage::

        generator = CorrectionVoucherGenerator(repository, supervisor, client_factory=factory)
        correction = await generator.reverse_voucher("A", "42", user_id)
    """

    def __init__(
        self,
        repository: StorageRepository,
        supervisor: TokenRefreshSupervisor,
        *,
        client_factory: Callable[[str], FortnoxClient],
        documents: DocumentStore | None = None,
        default_series: str = "A",
    ) -> None:
        self.repository = repository
        self.supervisor = supervisor
        self.client_factory = client_factory
        self.documents = documents
        self.default_series = default_series

    async def reverse_voucher(
        self,
        series: str,
        number: str | int,
        user_id: str,
        *,
        inventory_item_id: str | None = None,
        correction_series: str | None = None,
        correction_date: date | None = None,
    ) -> CorrectionVoucher:
        """Post a correction for voucher ``series-number``.

        Raises:
            VoucherNotFound: Fortnox has no such voucher.
            ValueError: The voucher has no non-zero rows.
            NoActiveIntegration: Nobody in the user's organization is connected.
        """
        series = series or self.default_series
        number = str(number)
        target_series = correction_series or series
        when = correction_date or date.today()

        organization_id = self.repository.get_user_organization_id(user_id)
        credential = self.repository.active_credential_for_organization(organization_id)
        if credential is None:
            raise NoActiveIntegration(f"No active Fortnox credential in organization {organization_id}")

        try:
            token = await self.supervisor.get_valid_access_token(credential)
            client = self.client_factory(token)
            try:
                original = await self._fetch_voucher(client, series, number)
                rows = build_mirror_rows(original, series, number)
                body = {
                    "VoucherSeries": target_series,
                    "TransactionDate": when.isoformat(),
                    "Description": f"Makulerar verifikat {series}-{number}",
                    "Reference": "Automatisk makulering",
                    "VoucherRows": rows,
                }
                created = await client.create_voucher(body)
                correction = CorrectionVoucher(
                    original_series=series,
                    original_number=number,
                    correction_series=str(created.get("VoucherSeries") or target_series),
                    correction_number=str(created.get("VoucherNumber") or ""),
                    correction_date=when,
                    rows=rows,
                )
                self.repository.add_correction(
                    user_id=user_id,
                    original_series=series,
                    original_number=number,
                    correction_series=correction.correction_series,
                    correction_number=correction.correction_number,
                    correction_date=when,
                )
                logger.info(
                    "Reversed voucher %s-%s with %s-%s",
                    series, number, correction.correction_series, correction.correction_number,
                )
                if inventory_item_id:
                    correction.attachment_connected = await self._attach_documentation(
                        client, inventory_item_id, correction, created.get("Year")
                    )
            finally:
                await client.close()
        except DealerLedgerError as e:
            self.repository.log_error(
                user_id,
                "correction_error",
                str(e),
                {"original_series": series, "original_number": number, "inventory_item_id": inventory_item_id},
            )
            raise

        return correction

    async def reverse_inventory_item(self, item_id: str, user_id: str) -> CorrectionVoucher:
        """Reverse a vehicle's booked purchase ahead of deleting it locally."""
        item = self.repository.get_inventory_item(item_id)
        organization_id = self.repository.get_user_organization_id(user_id)
        if item.organization_id != organization_id:
            raise CrossOrganizationError(f"Inventory item {item_id} belongs to another organization")
        if item.fortnox_sync_status != SyncStatus.SYNCED.value or not item.fortnox_verification_number:
            raise ValueError(f"Inventory item {item_id} has no synced verification to reverse")

        correction = await self.reverse_voucher(
            self.default_series, item.fortnox_verification_number, user_id, inventory_item_id=item.id
        )
        self.repository.update_inventory_item(
            item.id,
            fortnox_sync_status=SyncStatus.PENDING.value,
            fortnox_verification_number=None,
            fortnox_synced_at=None,
        )
        self.repository.log_sync(
            inventory_item_id=item.id,
            user_id=user_id,
            synced_by_user_id=user_id,
            sync_type="delete",
            sync_status="success",
            verification_number=correction.correction_number,
            sync_data={
                "voucher_series": correction.original_series,
                "voucher_number": correction.original_number,
                "correction": f"{correction.correction_series}-{correction.correction_number}",
            },
        )
        return correction

    async def _fetch_voucher(self, client: FortnoxClient, series: str, number: str) -> dict[str, Any]:
        try:
            voucher = await client.get_voucher(series, number)
        except FortnoxApiError as e:
            if e.status == 404:
                raise VoucherNotFound(404, e.message, code=e.code, endpoint=e.endpoint, body=e.body) from e
            raise
        if not voucher:
            raise VoucherNotFound(404, f"Voucher {series}-{number} not found", endpoint=f"vouchers/{series}/{number}")
        return voucher

    async def _attach_documentation(
        self, client: FortnoxClient, item_id: str, correction: CorrectionVoucher, year: int | None
    ) -> bool:
        """Upload the item's purchase documentation and link it. Never raises."""
        if self.documents is None:
            return False
        try:
            item = self.repository.get_inventory_item(item_id)
            if not item.purchase_documentation:
                return False
            document = self.documents.read(item.purchase_documentation)
            uploaded = await client.upload_inbox_file(document.filename, document.content, document.content_type)
            file_id = uploaded.get("Id")
            if not file_id:
                logger.warning("Inbox upload for item %s returned no file id", item_id)
                return False
            await client.connect_file_to_voucher(
                str(file_id), correction.correction_series, correction.correction_number, year
            )
        except (DealerLedgerError, OSError) as e:
            logger.warning(
                "Could not attach documentation to %s-%s: %s",
                correction.correction_series, correction.correction_number, e,
            )
            return False
        return True
