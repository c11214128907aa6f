"""CATE — application configuration.

Loads .env variables into a typed config object and the asset/parameter
settings from ``cate.json``.  Validates required variables on startup.
"""

import json
import os
import pathlib
from dataclasses import dataclass, fields

from dotenv import load_dotenv

from cate.failsafe.circuit_breaker import CircuitBreakerConfig
from cate.models.asset_config import AssetConfig
from cate.risk.models import RiskParameters


# Only required when running in production; development falls back to an
# ephemeral signer.
_PRODUCTION_REQUIRED_VARS = [
    "CATE_SIGNER_SECRET",
]

DEFAULT_PROGRAM_ID = "77kRa7xJb2SQpPC1fdFGj8edzm5MJxhq2j54BxMWtPe6"
DEFAULT_SETTINGS_PATH = pathlib.Path(__file__).resolve().parent.parent / "cate.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    environment: str  # "development" or "production"
    signer_secret: str | None  # base58, or "b64:"-prefixed base64
    hermes_endpoint: str
    poll_interval_seconds: float
    require_live_oracle: bool
    rpc_endpoint: str
    program_id: str
    db_path: str
    log_level: str
    api_port: int
    history_size: int
    timestamp_tolerance_seconds: int
    sign_rate_limit_per_minute: int

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@dataclass(frozen=True)
class Settings:
    """Asset feeds and parameter overrides from ``cate.json``."""

    assets: list[AssetConfig]
    risk_parameters: RiskParameters
    circuit_breaker: CircuitBreakerConfig

    @property
    def enabled_assets(self) -> list[AssetConfig]:
        return [a for a in self.assets if a.enabled]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _signer_secret_from_env() -> str | None:
    secret = os.environ.get("CATE_SIGNER_SECRET")
    if secret:
        return secret
    secret_b64 = os.environ.get("CATE_SIGNER_SECRET_B64")
    if secret_b64:
        return f"b64:{secret_b64}"
    return None


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent in production.
    """
    load_dotenv(dotenv_path=env_path)

    environment = os.environ.get("CATE_ENVIRONMENT", "development")
    if environment not in ("development", "production"):
        raise ValueError(
            f"CATE_ENVIRONMENT must be 'development' or 'production', got {environment!r}"
        )

    signer_secret = _signer_secret_from_env()
    if environment == "production" and signer_secret is None:
        missing = [v for v in _PRODUCTION_REQUIRED_VARS if not os.environ.get(v)]
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
            " (or CATE_SIGNER_SECRET_B64)"
        )

    return Config(
        environment=environment,
        signer_secret=signer_secret,
        hermes_endpoint=os.environ.get("HERMES_ENDPOINT", "https://hermes.pyth.network"),
        poll_interval_seconds=float(os.environ.get("ORACLE_POLL_INTERVAL_SECONDS", "5")),
        require_live_oracle=_env_bool("REQUIRE_LIVE_ORACLE", True),
        rpc_endpoint=os.environ.get("SOLANA_RPC_ENDPOINT", "https://api.devnet.solana.com"),
        program_id=os.environ.get("CATE_PROGRAM_ID", DEFAULT_PROGRAM_ID),
        db_path=os.environ.get("DB_PATH", "data/cate.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=int(os.environ.get("API_PORT", "3001")),
        history_size=int(os.environ.get("HISTORY_SIZE", "1000")),
        timestamp_tolerance_seconds=int(
            os.environ.get("SIGNING_TIMESTAMP_TOLERANCE_SECONDS", "300")
        ),
        sign_rate_limit_per_minute=int(os.environ.get("SIGN_RATE_LIMIT_PER_MINUTE", "30")),
    )


def _apply_overrides(defaults, overrides: dict, section: str):
    """Return a copy of the *defaults* dataclass with *overrides* applied."""
    known = {f.name for f in fields(defaults)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown {section} key(s): {', '.join(unknown)}")
    values = {f.name: getattr(defaults, f.name) for f in fields(defaults)}
    values.update(overrides)
    return type(defaults)(**values)


def load_settings(path: pathlib.Path | str | None = None) -> Settings:
    """Load asset feeds and parameter overrides from a JSON settings file.

    A missing file yields the built-in defaults with no assets.
    """
    settings_path = pathlib.Path(path) if path else DEFAULT_SETTINGS_PATH
    data: dict = {}
    if settings_path.exists():
        data = json.loads(settings_path.read_text(encoding="utf-8"))

    asset_keys = {f.name for f in fields(AssetConfig)}
    assets: list[AssetConfig] = []
    for entry in data.get("assets", []):
        unknown = sorted(set(entry) - asset_keys)
        if unknown:
            raise ValueError(f"Unknown assets key(s): {', '.join(unknown)}")
        assets.append(AssetConfig(**entry))
    seen: set[str] = set()
    for asset in assets:
        if asset.asset_id in seen:
            raise ValueError(f"Duplicate asset_id in settings: {asset.asset_id}")
        seen.add(asset.asset_id)

    risk = _apply_overrides(RiskParameters(), data.get("risk_parameters", {}), "risk_parameters")
    risk.validate()
    breaker = _apply_overrides(
        CircuitBreakerConfig(), data.get("circuit_breaker", {}), "circuit_breaker",
    )
    return Settings(assets=assets, risk_parameters=risk, circuit_breaker=breaker)
