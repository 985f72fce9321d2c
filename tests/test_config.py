"""Tests for configuration management."""

from pathlib import Path

import pytest
import yaml

from dealerledger.config import DEFAULT_SCOPES, DealerLedgerConfig, FortnoxConfig
from dealerledger.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FORTNOX_CLIENT_ID",
        "FORTNOX_CLIENT_SECRET",
        "FORTNOX_REDIRECT_URI",
        "FORTNOX_TOKEN_ENCRYPTION_KEY",
        "DEALERLEDGER_DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    def test_default_config(self) -> None:
        config = DealerLedgerConfig()
        assert config.fortnox.api_url == "https://api.fortnox.se/3"
        assert config.fortnox.scopes == DEFAULT_SCOPES
        assert config.security.state_ttl_seconds == 600
        assert config.security.refresh_buffer_seconds == 300
        assert config.sync.vat_rate == 0.25
        assert config.sync.default_voucher_series == "A"

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        yaml_content = {
            "fortnox": {"client_id": "from-yaml", "redirect_uri": "https://x.example/cb"},
            "database": {"url": "postgresql://localhost/dealer"},
            "sync": {"default_supplier_number": "42"},
        }
        config_file = tmp_path / "dealerledger.yaml"
        config_file.write_text(yaml.dump(yaml_content))

        config = DealerLedgerConfig.load(str(config_file))
        assert config.fortnox.client_id == "from-yaml"
        assert config.fortnox.redirect_uri == "https://x.example/cb"
        assert config.database.url == "postgresql://localhost/dealer"
        assert config.sync.default_supplier_number == "42"

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        config = DealerLedgerConfig.load(str(tmp_path / "nope.yaml"))
        assert config.fortnox.client_id is None

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "dealerledger.yaml"
        config_file.write_text(yaml.dump({"fortnox": {"client_id": "from-yaml"}}))
        monkeypatch.setenv("FORTNOX_CLIENT_ID", "from-env")
        monkeypatch.setenv("FORTNOX_CLIENT_SECRET", "env-secret")
        monkeypatch.setenv("FORTNOX_TOKEN_ENCRYPTION_KEY", "a2V5")
        monkeypatch.setenv("DEALERLEDGER_DATABASE_URL", "sqlite://")

        config = DealerLedgerConfig.load(str(config_file))
        assert config.fortnox.client_id == "from-env"
        assert config.fortnox.client_secret == "env-secret"
        assert config.security.token_encryption_key == "a2V5"
        assert config.database.url == "sqlite://"

    def test_load_with_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEALERLEDGER_DATABASE_URL", "sqlite:///env.db")
        config = DealerLedgerConfig.load(None, database={"url": "sqlite://"})
        assert config.database.url == "sqlite://"

    def test_invalid_vat_rate(self) -> None:
        with pytest.raises(ValueError):
            DealerLedgerConfig.load(None, sync={"vat_rate": 1.5})


class TestClientCredentials:
    def test_present(self) -> None:
        config = FortnoxConfig(client_id="id", client_secret="secret")
        assert config.require_client_credentials() == ("id", "secret")

    def test_missing_secret(self) -> None:
        with pytest.raises(ConfigurationError):
            FortnoxConfig(client_id="id").require_client_credentials()

    def test_missing_id(self) -> None:
        with pytest.raises(ConfigurationError):
            FortnoxConfig(client_secret="secret").require_client_credentials()
