"""
Fortnox REST API client (v3).

Thin async wrapper over the resources the engine touches: company
information, projects, supplier invoices, vouchers, accounts, suppliers and
the file inbox. Every request carries the bearer access token plus the
``Client-Secret`` header Fortnox requires.

Error responses look like::

    {"ErrorInformation": {"error": 1, "message": "...", "code": 2001182}}

and are raised as :class:`~dealerledger.errors.FortnoxApiError` with the
numeric code preserved, so callers can pattern-match specific conditions.

Fortnox API docs:
  https://apps.fortnox.se/apidocs
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from dealerledger.config import FortnoxConfig
from dealerledger.errors import FortnoxApiError

logger = logging.getLogger("dealerledger.fortnox.client")


class FortnoxClient:
    """Authenticated Fortnox API session for one access token.

    Usage::

        client = FortnoxClient(config.fortnox, access_token)
        info = await client.get_company_information()
        project = await client.create_project("ABC123", "Volvo V70")
    """

    def __init__(
        self,
        config: FortnoxConfig,
        access_token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.access_token = access_token
        self._http = http_client
        self._owns_http = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.config.timeout,
                headers={"Accept": "application/json"},
            )
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        """Close the HTTP client if this session created it."""
        if self._owns_http and self._http and not self._http.is_closed:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        _, client_secret = self.config.require_client_credentials()
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Client-Secret": client_secret,
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request and return the decoded JSON body."""
        client = await self._get_client()
        url = f"{self.config.api_url}/{endpoint}"

        try:
            resp = await client.request(
                method, url, headers=self._headers(), json=json, params=params, files=files
            )
        except httpx.HTTPError as e:
            logger.error("Fortnox %s %s failed: %s", method, endpoint, e)
            raise FortnoxApiError(0, f"Fortnox could not be reached: {e}", endpoint=endpoint) from e

        if resp.status_code >= 400:
            raise _error_from_response(resp, endpoint)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise FortnoxApiError(
                resp.status_code, "Response was not valid JSON", endpoint=endpoint, body=resp.text[:500]
            ) from e

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def get_company_information(self) -> dict[str, Any]:
        data = await self._request("GET", "companyinformation")
        return data.get("CompanyInformation", {})

    async def create_project(
        self,
        project_number: str,
        description: str,
        *,
        start_date: str | None = None,
        comments: str | None = None,
    ) -> dict[str, Any]:
        project: dict[str, Any] = {
            "ProjectNumber": project_number,
            "Description": description,
            "Status": "ONGOING",
        }
        if start_date:
            project["StartDate"] = start_date
        if comments:
            project["Comments"] = comments
        data = await self._request("POST", "projects", json={"Project": project})
        return data.get("Project", {})

    async def get_project(self, project_number: str) -> dict[str, Any]:
        data = await self._request("GET", f"projects/{quote(project_number, safe='')}")
        return data.get("Project", {})

    async def create_supplier_invoice(self, invoice: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "supplierinvoices", json={"SupplierInvoice": invoice})
        return data.get("SupplierInvoice", {})

    async def get_voucher(
        self, series: str, number: str | int, *, financial_year: int | None = None
    ) -> dict[str, Any]:
        params = {"financialyear": financial_year} if financial_year else None
        data = await self._request(
            "GET", f"vouchers/{quote(str(series), safe='')}/{quote(str(number), safe='')}", params=params
        )
        return data.get("Voucher", {})

    async def create_voucher(self, voucher: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "vouchers", json={"Voucher": voucher})
        return data.get("Voucher", {})

    async def upload_inbox_file(
        self, filename: str, content: bytes, content_type: str = "application/pdf"
    ) -> dict[str, Any]:
        data = await self._request("POST", "inbox", files={"file": (filename, content, content_type)})
        return data.get("InboxFile") or data.get("File", {})

    async def connect_file_to_voucher(
        self, file_id: str, series: str, number: str | int, year: int | None = None
    ) -> dict[str, Any]:
        connection: dict[str, Any] = {
            "FileId": file_id,
            "VoucherSeries": series,
            "VoucherNumber": str(number),
        }
        if year:
            connection["VoucherYear"] = year
        data = await self._request(
            "POST", "voucherfileconnections", json={"VoucherFileConnection": connection}
        )
        return data.get("VoucherFileConnection", {})

    async def list_accounts(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "accounts")
        return data.get("Accounts", [])

    async def list_suppliers(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "suppliers")
        return data.get("Suppliers", [])


def _error_from_response(resp: httpx.Response, endpoint: str) -> FortnoxApiError:
    """Build a FortnoxApiError from an error response."""
    text = resp.text or ""
    message = text[:200] or f"HTTP {resp.status_code}"
    code: int | None = None
    try:
        data = resp.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        info = data.get("ErrorInformation") or {}
        message = info.get("message") or info.get("Message") or message
        raw_code = info.get("code", info.get("Code"))
        try:
            code = int(raw_code) if raw_code is not None else None
        except (TypeError, ValueError):
            code = None

    logger.warning(
        "Fortnox API error on %s: status=%d code=%s message=%s", endpoint, resp.status_code, code, message
    )
    return FortnoxApiError(resp.status_code, str(message), code=code, endpoint=endpoint, body=text[:2000])
