"""
Error taxonomy for the Fortnox synchronization engine.

Every error carries an English message for logs (``str(err)``) and a short
Swedish ``user_message`` naming the step that failed, which UI surfaces show
verbatim.
"""

from __future__ import annotations

from typing import Any


class DealerLedgerError(Exception):
    """Base class for all engine errors."""

    user_message: str = "Synkroniseringen mot Fortnox misslyckades."
    retryable: bool = False

    def __init__(self, message: str = "", *, user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(DealerLedgerError):
    """Deployment is missing a secret or key. Operator must fix it."""

    user_message = "Fortnox-integrationen är inte korrekt konfigurerad. Kontakta administratören."


class IntegrityError(DealerLedgerError):
    """Encrypted credential failed authentication (tampered or wrong key)."""

    user_message = "Sparade Fortnox-uppgifter kunde inte läsas. Anslut till Fortnox igen."


# ---------------------------------------------------------------------------
# OAuth handshake
# ---------------------------------------------------------------------------


class AuthorizationFlowError(DealerLedgerError):
    """A step of the OAuth handshake failed. User must restart the flow."""

    user_message = "Anslutningen till Fortnox misslyckades. Försök igen."

    def __init__(self, message: str = "", *, step: Any = None, user_message: str | None = None) -> None:
        super().__init__(message, user_message=user_message)
        self.step = step


class StateInvalidError(AuthorizationFlowError):
    """The state value is unknown."""

    user_message = "Ogiltig anslutningsförfrågan. Starta anslutningen till Fortnox på nytt."


class StateExpiredError(StateInvalidError):
    """The state value is older than the allowed lifetime."""

    user_message = "Anslutningsförfrågan har gått ut. Starta anslutningen till Fortnox på nytt."


class StateReusedError(StateInvalidError):
    """The state value has already been redeemed."""

    user_message = "Anslutningsförfrågan har redan använts. Starta anslutningen till Fortnox på nytt."


class CodeReusedError(AuthorizationFlowError):
    """The authorization code has already been exchanged."""

    user_message = "Auktoriseringskoden har redan använts. Starta anslutningen till Fortnox på nytt."


_EXCHANGE_MESSAGES = {
    "invalid_grant": "Auktoriseringskoden är ogiltig eller har gått ut. Försök ansluta igen.",
    "invalid_client": "Fortnox godkände inte applikationens klientuppgifter. Kontakta administratören.",
    "invalid_request": "Fortnox avvisade anslutningsförfrågan. Försök ansluta igen.",
}


class TokenExchangeError(AuthorizationFlowError):
    """The token endpoint rejected the authorization code."""

    user_message = "Kunde inte hämta åtkomst från Fortnox. Försök ansluta igen."

    def __init__(self, message: str = "", *, provider_error: str | None = None, step: Any = None) -> None:
        super().__init__(message, step=step, user_message=_EXCHANGE_MESSAGES.get(provider_error or ""))
        self.provider_error = provider_error


class CompanyMismatchError(AuthorizationFlowError):
    """The connected Fortnox company is not the caller's organization."""

    def __init__(self, expected: str, actual: str, *, step: Any = None) -> None:
        super().__init__(
            f"Fortnox company registration number {actual!r} does not match "
            f"organization registration number {expected!r}",
            step=step,
            user_message=(
                f"Fortnox-företaget ({actual}) matchar inte din organisation ({expected}). "
                "Logga in på rätt företag i Fortnox."
            ),
        )
        self.expected = expected
        self.actual = actual


class PersistError(AuthorizationFlowError):
    """The credential could not be stored."""

    user_message = "Kunde inte spara Fortnox-anslutningen. Försök igen."


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


class CrossOrganizationError(DealerLedgerError):
    """A user tried to sync a record owned by another organization."""

    user_message = "Du kan inte synkronisera fordon från en annan organisation."


class NoActiveIntegration(DealerLedgerError):
    """No user in the organization has an active Fortnox credential."""

    user_message = "Ingen aktiv Fortnox-anslutning hittades för din organisation. Anslut till Fortnox först."


class ReauthenticationRequired(DealerLedgerError):
    """The refresh token was rejected. User must reconnect."""

    user_message = "Fortnox-anslutningen har gått ut. Vänligen anslut igen."


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class FortnoxApiError(DealerLedgerError):
    """Fortnox returned an error response, or could not be reached (status 0)."""

    retryable = True

    def __init__(
        self,
        status: int,
        message: str,
        *,
        code: int | None = None,
        endpoint: str = "",
        body: str = "",
    ) -> None:
        super().__init__(
            f"Fortnox API error {status} on {endpoint or '?'}: {message}"
            + (f" (code {code})" if code is not None else ""),
            user_message=f"Fortnox svarade med ett fel: {message}",
        )
        self.status = status
        self.code = code
        self.message = message
        self.endpoint = endpoint
        self.body = body


class VoucherNotFound(FortnoxApiError):
    """The voucher to reverse does not exist."""

    retryable = False


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class VatTreatmentError(DealerLedgerError):
    """Missing, unknown or contradictory VAT treatment."""

    user_message = "Fordonets momsregel saknas eller är felaktig."


class UnsupportedSyncEvent(DealerLedgerError):
    """The inventory event has no automated bookkeeping yet."""

    user_message = "Försäljningar bokförs inte automatiskt i Fortnox ännu."


class RecordNotFound(DealerLedgerError):
    """A collaborator record (vehicle, cost, profile) does not exist."""

    user_message = "Posten kunde inte hittas."
