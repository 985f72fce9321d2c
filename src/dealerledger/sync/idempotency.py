"""
Recognizing "this already exists" answers from Fortnox.

Projects are keyed by registration number, so a second attempt for the same
vehicle gets a duplicate error back. Which errors count as duplicates is a
predicate so it can be swapped if Fortnox changes its codes or wording.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from dealerledger.errors import FortnoxApiError

DuplicatePredicate = Callable[[FortnoxApiError], bool]

# Fortnox: "Projektnummer används redan" / "Project number already in use"
DUPLICATE_PROJECT_CODE = 2001182

_DUPLICATE_PATTERNS = re.compile(
    r"already (in use|exists)|används redan|finns redan|duplicate",
    re.IGNORECASE,
)


def is_duplicate_error(error: FortnoxApiError) -> bool:
    if error.code == DUPLICATE_PROJECT_CODE:
        return True
    return bool(_DUPLICATE_PATTERNS.search(error.message or ""))
