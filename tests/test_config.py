"""Tests for configuration loading."""

import logging
from logging.handlers import RotatingFileHandler

import yaml

from bank_feed_recon.config import (
    LoggingConfig,
    ReconConfig,
    generate_default_config,
    load_config,
)
from bank_feed_recon.utils.logging_config import setup_logging


def test_defaults_without_file():
    config = load_config(None, environ={})

    assert isinstance(config, ReconConfig)
    assert config.matching.weights.amount == 0.6
    assert config.matching.date_window_days == 60
    assert config.matching.name_similarity_threshold == 0.5
    assert config.sync.overlap_days == 1
    assert config.config_file_path is None


def test_yaml_is_merged_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump(
            {
                "matching": {"weights": {"amount": 0.7}, "max_suggestions": 3},
                "database": {"url": "sqlite:///other.db"},
            }
        )
    )

    config = load_config(path, environ={})

    assert config.matching.weights.amount == 0.7
    assert config.matching.weights.date == 0.25
    assert config.matching.max_suggestions == 3
    assert config.database.url == "sqlite:///other.db"
    assert config.config_file_path == str(path)


def test_missing_file_falls_back_to_defaults(tmp_path):
    config = load_config(tmp_path / "absent.yaml", environ={})
    assert config.config_file_path is None


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"providers": {"gocardless": {"secret_id": "from-file"}}}))

    config = load_config(
        path,
        environ={
            "GOCARDLESS_SECRET_ID": "from-env",
            "GOCARDLESS_SECRET_KEY": "key",
            "BANK_RECON_DATABASE_URL": "sqlite:///env.db",
        },
    )

    assert config.providers.gocardless.secret_id == "from-env"
    assert config.providers.gocardless.secret_key == "key"
    assert config.database.url == "sqlite:///env.db"


def test_generated_file_round_trips(tmp_path):
    path = tmp_path / "nested" / "config.yaml"

    generate_default_config(path)

    assert path.read_text().startswith("# Bank feed reconciliation engine configuration")
    config = load_config(path, environ={})
    assert config.sync.initial_lookback_days == 30
    assert config.input.encodings == ["utf-8-sig", "latin-1"]


def test_logging_setup_from_config(tmp_path):
    settings = LoggingConfig(file=str(tmp_path / "logs" / "recon.log"), backup_count=2)

    package_logger = setup_logging(settings)

    try:
        console, rotating = package_logger.handlers
        assert console.level == logging.INFO
        assert isinstance(rotating, RotatingFileHandler)
        assert rotating.backupCount == 2
        assert logging.getLogger("urllib3").level == logging.WARNING

        logging.getLogger("bank_feed_recon.scheduler").debug("sync trace")
        rotating.flush()
        assert "sync trace" in (tmp_path / "logs" / "recon.log").read_text()

        setup_logging(LoggingConfig(level="error"), verbose=True)
        assert [h.level for h in package_logger.handlers] == [logging.DEBUG]
    finally:
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()
