"""Tests for cate.config — environment variable loading and settings file."""

import json

import pytest

from cate.config import DEFAULT_PROGRAM_ID, load_config, load_settings
from cate.risk.models import RiskParameters


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Ensure CATE env vars are cleared between tests."""
    for var in [
        "CATE_ENVIRONMENT",
        "CATE_SIGNER_SECRET",
        "CATE_SIGNER_SECRET_B64",
        "HERMES_ENDPOINT",
        "ORACLE_POLL_INTERVAL_SECONDS",
        "REQUIRE_LIVE_ORACLE",
        "SOLANA_RPC_ENDPOINT",
        "CATE_PROGRAM_ID",
        "DB_PATH",
        "LOG_LEVEL",
        "API_PORT",
        "HISTORY_SIZE",
        "SIGNING_TIMESTAMP_TOLERANCE_SECONDS",
        "SIGN_RATE_LIMIT_PER_MINUTE",
    ]:
        monkeypatch.delenv(var, raising=False)


def _no_env_file(tmp_path) -> str:
    # Non-existent path so load_dotenv doesn't pick up a stray .env
    return str(tmp_path / "nonexistent.env")


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = load_config(env_path=_no_env_file(tmp_path))
        assert cfg.environment == "development"
        assert cfg.signer_secret is None
        assert cfg.hermes_endpoint == "https://hermes.pyth.network"
        assert cfg.poll_interval_seconds == 5.0
        assert cfg.require_live_oracle is True
        assert cfg.rpc_endpoint == "https://api.devnet.solana.com"
        assert cfg.program_id == DEFAULT_PROGRAM_ID
        assert cfg.db_path == "data/cate.db"
        assert cfg.log_level == "INFO"
        assert cfg.api_port == 3001
        assert cfg.history_size == 1000
        assert cfg.timestamp_tolerance_seconds == 300
        assert cfg.sign_rate_limit_per_minute == 30
        assert cfg.is_production is False

    def test_production_requires_signer(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CATE_ENVIRONMENT", "production")
        with pytest.raises(ValueError, match="CATE_SIGNER_SECRET"):
            load_config(env_path=_no_env_file(tmp_path))

    def test_production_with_signer(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CATE_ENVIRONMENT", "production")
        monkeypatch.setenv("CATE_SIGNER_SECRET", "abc123")
        cfg = load_config(env_path=_no_env_file(tmp_path))
        assert cfg.is_production is True
        assert cfg.signer_secret == "abc123"

    def test_b64_secret_is_prefixed(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CATE_SIGNER_SECRET_B64", "AAAA")
        cfg = load_config(env_path=_no_env_file(tmp_path))
        assert cfg.signer_secret == "b64:AAAA"

    def test_invalid_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CATE_ENVIRONMENT", "staging")
        with pytest.raises(ValueError, match="CATE_ENVIRONMENT"):
            load_config(env_path=_no_env_file(tmp_path))

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("REQUIRE_LIVE_ORACLE", "false")
        monkeypatch.setenv("API_PORT", "9000")
        monkeypatch.setenv("ORACLE_POLL_INTERVAL_SECONDS", "2.5")
        monkeypatch.setenv("SIGN_RATE_LIMIT_PER_MINUTE", "5")
        cfg = load_config(env_path=_no_env_file(tmp_path))
        assert cfg.require_live_oracle is False
        assert cfg.api_port == 9000
        assert cfg.poll_interval_seconds == 2.5
        assert cfg.sign_rate_limit_per_minute == 5

    def test_env_file_is_loaded(self, monkeypatch, tmp_path):
        # Registers LOG_LEVEL with monkeypatch so the dotenv value is undone
        monkeypatch.setenv("LOG_LEVEL", "INFO")
        monkeypatch.delenv("LOG_LEVEL")
        env_file = tmp_path / ".env"
        env_file.write_text("LOG_LEVEL=DEBUG\n", encoding="utf-8")
        cfg = load_config(env_path=str(env_file))
        assert cfg.log_level == "DEBUG"


class TestLoadSettings:
    def test_repo_settings_file(self):
        settings = load_settings()
        ids = [a.asset_id for a in settings.assets]
        assert "SOL/USD" in ids
        assert [a.asset_id for a in settings.enabled_assets] == ["SOL/USD", "BTC/USD", "ETH/USD"]
        assert settings.risk_parameters == RiskParameters()
        assert settings.circuit_breaker.failure_threshold == 5

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json")
        assert settings.assets == []
        assert settings.risk_parameters == RiskParameters()

    def test_overrides_applied(self, tmp_path):
        path = tmp_path / "cate.json"
        path.write_text(json.dumps({
            "assets": [{"asset_id": "SOL/USD", "feed_id": "0xabc"}],
            "risk_parameters": {"max_staleness_seconds": 10.0},
            "circuit_breaker": {"failure_threshold": 2},
        }), encoding="utf-8")
        settings = load_settings(path)
        assert settings.assets[0].normalized_feed_id == "abc"
        assert settings.risk_parameters.max_staleness_seconds == 10.0
        assert settings.circuit_breaker.failure_threshold == 2

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "cate.json"
        path.write_text(json.dumps({"risk_parameters": {"bogus": 1}}), encoding="utf-8")
        with pytest.raises(ValueError, match="bogus"):
            load_settings(path)

    def test_invalid_thresholds_rejected(self, tmp_path):
        path = tmp_path / "cate.json"
        path.write_text(json.dumps({
            "risk_parameters": {"max_confidence_ratio_block": 0.5},
        }), encoding="utf-8")
        with pytest.raises(ValueError, match="max_confidence_ratio_block"):
            load_settings(path)

    def test_duplicate_asset_rejected(self, tmp_path):
        path = tmp_path / "cate.json"
        asset = {"asset_id": "SOL/USD", "feed_id": "0xabc"}
        path.write_text(json.dumps({"assets": [asset, asset]}), encoding="utf-8")
        with pytest.raises(ValueError, match="Duplicate"):
            load_settings(path)

    def test_long_asset_id_rejected(self, tmp_path):
        path = tmp_path / "cate.json"
        path.write_text(json.dumps({
            "assets": [{"asset_id": "X" * 17, "feed_id": "0xabc"}],
        }), encoding="utf-8")
        with pytest.raises(ValueError, match="16 bytes"):
            load_settings(path)

    def test_non_finite_threshold_rejected(self, tmp_path):
        path = tmp_path / "cate.json"
        path.write_text('{"risk_parameters": {"max_staleness_seconds": NaN}}', encoding="utf-8")
        with pytest.raises(ValueError, match="max_staleness_seconds must be finite"):
            load_settings(path)

    def test_unknown_asset_key_rejected(self, tmp_path):
        path = tmp_path / "cate.json"
        path.write_text(json.dumps({
            "assets": [{"asset_id": "SOL/USD", "feed_id": "0xabc", "decimals": 8}],
        }), encoding="utf-8")
        with pytest.raises(ValueError, match="decimals"):
            load_settings(path)
