"""Bookkeeping sync: VAT rules, accounts, supplier invoices and corrections."""
from dealerledger.sync.accounts import DEFAULT_ACCOUNTS, AccountMap
from dealerledger.sync.corrections import CorrectionVoucher, CorrectionVoucherGenerator, build_mirror_rows
from dealerledger.sync.idempotency import is_duplicate_error
from dealerledger.sync.synchronizer import (
    AccountingSynchronizer,
    InvoiceRow,
    SyncResult,
    build_additional_cost_rows,
    build_purchase_rows,
)
from dealerledger.sync.vat import VatTreatment, split_gross

__all__ = [
    "AccountMap",
    "AccountingSynchronizer",
    "CorrectionVoucher",
    "CorrectionVoucherGenerator",
    "DEFAULT_ACCOUNTS",
    "InvoiceRow",
    "SyncResult",
    "VatTreatment",
    "build_additional_cost_rows",
    "build_mirror_rows",
    "build_purchase_rows",
    "is_duplicate_error",
    "split_gross",
]
