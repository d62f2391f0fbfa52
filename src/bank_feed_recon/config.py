"""Configuration loader and validation for the reconciliation engine."""

from pathlib import Path
from typing import Any, Optional
import logging
import os

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class CsvInputConfig(BaseModel):
    """Configuration for delimited text statements."""

    # None means detect from the header line
    delimiter: Optional[str] = None
    date_formats: list[str] = Field(
        default_factory=lambda: [
            "%Y-%m-%d",
            "%d/%m/%Y",
            "%m/%d/%Y",
            "%Y%m%d",
            "%d-%m-%Y",
            "%Y/%m/%d",
            "%d.%m.%Y",
        ]
    )
    # Explicit column names override header detection, e.g. {"date": "Buchungstag"}
    column_mappings: dict[str, str] = Field(default_factory=dict)


class InputConfig(BaseModel):
    """Configuration for statement file parsing."""

    encodings: list[str] = Field(default_factory=lambda: ["utf-8-sig", "latin-1"])
    default_currency: str = "EUR"
    preview_limit: int = 10
    csv: CsvInputConfig = Field(default_factory=CsvInputConfig)


class ScoreWeights(BaseModel):
    """Relative weight of each score component."""

    amount: float = 0.6
    date: float = 0.25
    name: float = 0.15


class TierThresholds(BaseModel):
    """Minimum score for each tier."""

    perfect: float = 0.95
    high: float = 0.75
    medium: float = 0.5


class MatchingConfig(BaseModel):
    """Configuration for match suggestion scoring."""

    weights: ScoreWeights = Field(default_factory=ScoreWeights)
    tiers: TierThresholds = Field(default_factory=TierThresholds)
    amount_tolerance_percent: float = 2.0
    amount_tolerance_absolute: float = 0.0
    date_window_days: int = 60
    date_floor: float = 0.1
    name_similarity_threshold: float = 0.5
    reference_boost: float = 0.5
    min_score: float = 0.2
    max_suggestions: int = 10
    match_same_currency: bool = True
    past_months: int = 18


class ImportConfig(BaseModel):
    """Configuration for the import pipeline."""

    lock_timeout_seconds: float = 30.0


class SyncConfig(BaseModel):
    """Configuration for bank feed synchronisation."""

    default_interval_hours: int = 6
    initial_lookback_days: int = 30
    overlap_days: int = 1
    max_workers: int = 4
    include_pending: bool = False
    request_timeout_seconds: float = 30.0
    pending_flow_ttl_minutes: int = 60
    max_historical_days: int = 90
    access_valid_for_days: int = 90


class GoCardlessConfig(BaseModel):
    """Credentials for GoCardless Bank Account Data."""

    secret_id: Optional[str] = None
    secret_key: Optional[str] = None
    base_url: str = "https://bankaccountdata.gocardless.com/api/v2"


class PlaidConfig(BaseModel):
    """Credentials for Plaid."""

    client_id: Optional[str] = None
    secret: Optional[str] = None
    environment: str = "sandbox"
    client_name: str = "Bank Feed Recon"


class ProvidersConfig(BaseModel):
    """Open banking aggregator credentials."""

    gocardless: GoCardlessConfig = Field(default_factory=GoCardlessConfig)
    plaid: PlaidConfig = Field(default_factory=PlaidConfig)


class DatabaseConfig(BaseModel):
    """Configuration for persistence."""

    url: str = "sqlite:///bank_feed_recon.db"
    timeout_seconds: float = 30.0
    echo: bool = False


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    library_level: str = "WARNING"


class ReconConfig(BaseModel):
    """Main configuration model for the engine."""

    input: InputConfig = Field(default_factory=InputConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    importing: ImportConfig = Field(default_factory=ImportConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    config_file_path: Optional[str] = None


# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "BANK_RECON_DATABASE_URL": "database.url",
    "GOCARDLESS_SECRET_ID": "providers.gocardless.secret_id",
    "GOCARDLESS_SECRET_KEY": "providers.gocardless.secret_key",
    "PLAID_CLIENT_ID": "providers.plaid.client_id",
    "PLAID_SECRET": "providers.plaid.secret",
    "PLAID_ENVIRONMENT": "providers.plaid.environment",
}


def get_default_config() -> dict[str, Any]:
    """Return the default configuration as a dictionary."""
    return {
        "input": {
            "encodings": ["utf-8-sig", "latin-1"],
            "default_currency": "EUR",
            "preview_limit": 10,
            "csv": {
                "delimiter": None,
                "date_formats": [
                    "%Y-%m-%d",
                    "%d/%m/%Y",
                    "%m/%d/%Y",
                    "%Y%m%d",
                    "%d-%m-%Y",
                    "%Y/%m/%d",
                    "%d.%m.%Y",
                ],
                "column_mappings": {},
            },
        },
        "matching": {
            "weights": {"amount": 0.6, "date": 0.25, "name": 0.15},
            "tiers": {"perfect": 0.95, "high": 0.75, "medium": 0.5},
            "amount_tolerance_percent": 2.0,
            "amount_tolerance_absolute": 0.0,
            "date_window_days": 60,
            "date_floor": 0.1,
            "name_similarity_threshold": 0.5,
            "reference_boost": 0.5,
            "min_score": 0.2,
            "max_suggestions": 10,
            "match_same_currency": True,
            "past_months": 18,
        },
        "importing": {
            "lock_timeout_seconds": 30.0,
        },
        "sync": {
            "default_interval_hours": 6,
            "initial_lookback_days": 30,
            "overlap_days": 1,
            "max_workers": 4,
            "include_pending": False,
            "request_timeout_seconds": 30.0,
            "pending_flow_ttl_minutes": 60,
            "max_historical_days": 90,
            "access_valid_for_days": 90,
        },
        "providers": {
            "gocardless": {
                "secret_id": None,
                "secret_key": None,
                "base_url": "https://bankaccountdata.gocardless.com/api/v2",
            },
            "plaid": {
                "client_id": None,
                "secret": None,
                "environment": "sandbox",
                "client_name": "Bank Feed Recon",
            },
        },
        "database": {
            "url": "sqlite:///bank_feed_recon.db",
            "timeout_seconds": 30.0,
            "echo": False,
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "file": None,
            "max_bytes": 10 * 1024 * 1024,
            "backup_count": 5,
            "library_level": "WARNING",
        },
    }


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> ReconConfig:
    """
    Load configuration from a YAML file or use defaults.

    Environment variables listed in ENV_OVERRIDES take precedence over
    both the defaults and the file.

    Args:
        config_path: Path to YAML configuration file (optional)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        ReconConfig object with loaded or default settings
    """
    config_dict = get_default_config()

    if config_path and config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        with open(config_path, "r") as f:
            user_config = yaml.safe_load(f) or {}

        config_dict = _deep_merge(config_dict, user_config)
        config_dict["config_file_path"] = str(config_path)
    else:
        logger.info("Using default configuration")

    _apply_env_overrides(config_dict, os.environ if environ is None else environ)

    return ReconConfig(**config_dict)


def _apply_env_overrides(config_dict: dict, environ) -> None:
    """Write environment values into the nested config dictionary."""
    for env_name, dotted in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if not value:
            continue
        *parents, leaf = dotted.split(".")
        target = config_dict
        for key in parents:
            target = target.setdefault(key, {})
        target[leaf] = value
        logger.debug(f"Applied environment override {env_name} -> {dotted}")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def generate_default_config(output_path: Path) -> None:
    """
    Generate a default configuration file.

    Args:
        output_path: Path to write the configuration file
    """
    config_dict = get_default_config()

    yaml_content = """# Bank feed reconciliation engine configuration
# Provider secrets may also be supplied through GOCARDLESS_SECRET_ID,
# GOCARDLESS_SECRET_KEY, PLAID_CLIENT_ID, PLAID_SECRET and PLAID_ENVIRONMENT.

"""
    yaml_content += yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        f.write(yaml_content)

    logger.info(f"Generated configuration file: {output_path}")
