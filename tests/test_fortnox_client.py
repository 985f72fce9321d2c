"""Tests for the Fortnox REST client."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import make_response

from dealerledger.config import FortnoxConfig
from dealerledger.errors import FortnoxApiError
from dealerledger.fortnox.client import FortnoxClient


def _client(config: FortnoxConfig, response=None, error: Exception | None = None):
    mock_http = AsyncMock()
    mock_http.is_closed = False
    if error is not None:
        mock_http.request.side_effect = error
    else:
        mock_http.request.return_value = response
    return FortnoxClient(config, "access-token", http_client=mock_http), mock_http


class TestRequests:
    @pytest.mark.asyncio
    async def test_headers(self, fortnox_config: FortnoxConfig) -> None:
        client, mock_http = _client(fortnox_config, make_response(200, {
            "CompanyInformation": {"CompanyName": "Org A AB", "OrganizationNumber": "556677-8899"},
        }))
        info = await client.get_company_information()
        assert info["OrganizationNumber"] == "556677-8899"

        args, kwargs = mock_http.request.call_args
        assert args == ("GET", "https://api.fortnox.se/3/companyinformation")
        assert kwargs["headers"]["Authorization"] == "Bearer access-token"
        assert kwargs["headers"]["Client-Secret"] == "secret-456"

    @pytest.mark.asyncio
    async def test_create_project_payload(self, fortnox_config: FortnoxConfig) -> None:
        client, mock_http = _client(fortnox_config, make_response(201, {"Project": {"ProjectNumber": "ABC123"}}))
        project = await client.create_project("ABC123", "Volvo V70", start_date="2024-05-01")
        assert project["ProjectNumber"] == "ABC123"

        args, kwargs = mock_http.request.call_args
        assert args == ("POST", "https://api.fortnox.se/3/projects")
        assert kwargs["json"] == {"Project": {
            "ProjectNumber": "ABC123",
            "Description": "Volvo V70",
            "Status": "ONGOING",
            "StartDate": "2024-05-01",
        }}

    @pytest.mark.asyncio
    async def test_get_voucher_path(self, fortnox_config: FortnoxConfig) -> None:
        client, mock_http = _client(fortnox_config, make_response(200, {"Voucher": {"VoucherNumber": 42}}))
        voucher = await client.get_voucher("A", 42)
        assert voucher["VoucherNumber"] == 42
        assert mock_http.request.call_args[0][1] == "https://api.fortnox.se/3/vouchers/A/42"

    @pytest.mark.asyncio
    async def test_connect_file_to_voucher(self, fortnox_config: FortnoxConfig) -> None:
        client, mock_http = _client(fortnox_config, make_response(200, {"VoucherFileConnection": {"FileId": "f"}}))
        await client.connect_file_to_voucher("f", "A", 43, 2024)
        assert mock_http.request.call_args[1]["json"] == {"VoucherFileConnection": {
            "FileId": "f",
            "VoucherSeries": "A",
            "VoucherNumber": "43",
            "VoucherYear": 2024,
        }}

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self, fortnox_config: FortnoxConfig) -> None:
        client, mock_http = _client(fortnox_config)
        await client.close()
        mock_http.aclose.assert_not_called()


class TestErrors:
    @pytest.mark.asyncio
    async def test_error_information_is_parsed(self, fortnox_config: FortnoxConfig) -> None:
        client, _ = _client(fortnox_config, make_response(400, {
            "ErrorInformation": {"error": 1, "message": "Projektnummer används redan", "code": 2001182},
        }))
        with pytest.raises(FortnoxApiError) as exc:
            await client.create_project("ABC123", "Volvo V70")
        assert exc.value.status == 400
        assert exc.value.code == 2001182
        assert exc.value.message == "Projektnummer används redan"
        assert exc.value.endpoint == "projects"

    @pytest.mark.asyncio
    async def test_capitalized_error_keys(self, fortnox_config: FortnoxConfig) -> None:
        client, _ = _client(fortnox_config, make_response(404, {
            "ErrorInformation": {"Error": 1, "Message": "Kan inte hitta verifikationen.", "Code": "2000423"},
        }))
        with pytest.raises(FortnoxApiError) as exc:
            await client.get_voucher("A", 999)
        assert exc.value.status == 404
        assert exc.value.code == 2000423

    @pytest.mark.asyncio
    async def test_non_json_error(self, fortnox_config: FortnoxConfig) -> None:
        client, _ = _client(fortnox_config, make_response(502, text="Bad Gateway"))
        with pytest.raises(FortnoxApiError) as exc:
            await client.list_accounts()
        assert exc.value.status == 502
        assert exc.value.code is None
        assert "Bad Gateway" in exc.value.message

    @pytest.mark.asyncio
    async def test_transport_error(self, fortnox_config: FortnoxConfig) -> None:
        client, _ = _client(fortnox_config, error=httpx.ConnectTimeout("timed out"))
        with pytest.raises(FortnoxApiError) as exc:
            await client.list_suppliers()
        assert exc.value.status == 0
        assert exc.value.retryable
