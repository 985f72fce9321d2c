"""
Chart-of-accounts lookup.

Organizations may override any account by name in ``account_mappings``;
everything else falls back to BAS-plan defaults below.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Account name -> default BAS account number
DEFAULT_ACCOUNTS: dict[str, str] = {
    "Lager - VMB-bilar": "1410",
    "Lager - Momsbilar": "1411",
    "Lager - Momsbilar - EU": "1412",
    "Lager - VMB-bilar - EU": "1413",
    "Lager - Påkostnader": "1414",
    "Förskottsbetalning": "1680",
    "Leverantörsskulder": "2440",
    "Utgående moms omvänd skattskyldighet EU": "2614",
    "Ingående moms": "2641",
    "Beräknad ingående moms EU": "2645",
    "Inköp av varor från EU": "4515",
    "Motkonto inköp av varor från EU": "4519",
}

INVENTORY_VMB = "Lager - VMB-bilar"
INVENTORY_MOMS = "Lager - Momsbilar"
INVENTORY_MOMS_EU = "Lager - Momsbilar - EU"
INVENTORY_VMB_EU = "Lager - VMB-bilar - EU"
INVENTORY_ADDITIONAL_COSTS = "Lager - Påkostnader"
PREPAYMENT = "Förskottsbetalning"
SUPPLIER_DEBT = "Leverantörsskulder"
OUTPUT_VAT_EU = "Utgående moms omvänd skattskyldighet EU"
INPUT_VAT = "Ingående moms"
CALCULATED_INPUT_VAT_EU = "Beräknad ingående moms EU"
EU_PURCHASES = "Inköp av varor från EU"
EU_PURCHASES_COUNTER = "Motkonto inköp av varor från EU"


@dataclass
class AccountMap:
    """Resolves account names to numbers for one organization."""

    overrides: dict[str, str] = field(default_factory=dict)

    def number(self, name: str) -> int:
        value = self.overrides.get(name) or DEFAULT_ACCOUNTS.get(name)
        if value is None:
            raise KeyError(f"No account configured for {name!r}")
        return int(value)
