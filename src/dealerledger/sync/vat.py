"""
VAT treatments for vehicle purchases and the money arithmetic they share.

Swedish dealers buy vehicles under one of four regimes:

- ``VMB``   — vinstmarginalbeskattning, margin scheme, domestic seller
- ``MOMS``  — standard VAT, domestic seller
- ``VMBI``  — margin scheme, bought from another EU country
- ``MOMSI`` — standard VAT, bought from another EU country

All arithmetic is :class:`~decimal.Decimal` rounded half-up to öre.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from dealerledger.errors import VatTreatmentError

CENT = Decimal("0.01")

# Older records carry the full label instead of the short tag
_LEGACY_LABELS = {
    "vinstmarginalbeskattning (vmb)": "VMB",
    "vinstmarginalbeskattning": "VMB",
}


class VatTreatment(str, Enum):
    VMB = "VMB"
    MOMS = "MOMS"
    VMBI = "VMBI"
    MOMSI = "MOMSI"

    @property
    def requires_project(self) -> bool:
        """Domestic standard-VAT purchases are booked without a project."""
        return self is not VatTreatment.MOMS

    @classmethod
    def parse(cls, tag: str | VatTreatment | None) -> VatTreatment:
        """Parse a UI tag or legacy label. Unknown or empty tags raise."""
        if isinstance(tag, VatTreatment):
            return tag
        if tag is None or not str(tag).strip():
            raise VatTreatmentError("Vehicle has no VAT treatment")
        cleaned = str(tag).strip()
        normalized = _LEGACY_LABELS.get(cleaned.lower(), cleaned.upper())
        try:
            return cls(normalized)
        except ValueError:
            raise VatTreatmentError(f"Unknown VAT treatment {tag!r}") from None


def to_money(value: Decimal | float | int | str | None) -> Decimal:
    """Coerce to a two-decimal Decimal. ``None`` is zero."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def split_gross(gross: Decimal | float | int | str, rate: Decimal | float | str = "0.25") -> tuple[Decimal, Decimal]:
    """Split a VAT-inclusive amount into ``(net, vat)``.

    ``vat = gross * rate / (1 + rate)`` rounded, and ``net = gross - vat`` so
    the two always add back to the gross amount.

    >>> split_gross(125000)
    (Decimal('100000.00'), Decimal('25000.00'))
    """
    gross = to_money(gross)
    rate = Decimal(str(rate))
    vat = (gross * rate / (1 + rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    return gross - vat, vat


def vat_on_net(net: Decimal | float | int | str, rate: Decimal | float | str = "0.25") -> Decimal:
    """VAT added on top of a net amount (reverse-charged EU purchases)."""
    return (to_money(net) * Decimal(str(rate))).quantize(CENT, rounding=ROUND_HALF_UP)
