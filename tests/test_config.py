"""Tests for runtime configuration and logging setup."""
import logging
from pathlib import Path

import pytest

from scaffoldkit.blueprints import BUNDLED_BLUEPRINTS_DIR
from scaffoldkit.core.config import EngineConfig, get_config, set_config
from scaffoldkit.core.errors import ConfigurationError
from scaffoldkit.core.logger import get_logger, set_verbose, setup_file_logging


class TestEngineConfig:
    def test_defaults(self, monkeypatch):
        for name in ("SCAFFOLDKIT_BLUEPRINTS_DIR", "SCAFFOLDKIT_MAX_WORKERS", "SCAFFOLDKIT_LOG_FILE"):
            monkeypatch.delenv(name, raising=False)

        config = get_config()

        assert config.blueprints_dir == BUNDLED_BLUEPRINTS_DIR
        assert config.max_workers is None
        assert config.log_file is None

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SCAFFOLDKIT_BLUEPRINTS_DIR", str(tmp_path))
        monkeypatch.setenv("SCAFFOLDKIT_MAX_WORKERS", "3")
        monkeypatch.setenv("SCAFFOLDKIT_LOG_FILE", "/tmp/scaffoldkit-test.log")

        config = EngineConfig.from_env()

        assert config.blueprints_dir == Path(tmp_path)
        assert config.max_workers == 3
        assert config.log_file == "/tmp/scaffoldkit-test.log"

    @pytest.mark.parametrize("value", ["abc", "0", "-2", "1.5"])
    def test_invalid_max_workers(self, monkeypatch, value):
        monkeypatch.setenv("SCAFFOLDKIT_MAX_WORKERS", value)

        with pytest.raises(ConfigurationError, match="SCAFFOLDKIT_MAX_WORKERS must be a positive integer"):
            get_config()

    def test_blank_max_workers_means_default(self, monkeypatch):
        monkeypatch.setenv("SCAFFOLDKIT_MAX_WORKERS", "  ")
        assert EngineConfig.from_env().max_workers is None

    def test_set_config_overrides(self, tmp_path):
        custom = EngineConfig(blueprints_dir=tmp_path, max_workers=2)
        set_config(custom)
        assert get_config() is custom

    def test_bundled_dir_ships_blueprints(self):
        assert (BUNDLED_BLUEPRINTS_DIR / "cli-standard" / "blueprint.yaml").is_file()


class TestLogger:
    def test_single_handler(self):
        first = get_logger("scaffoldkit.test_config")
        second = get_logger("scaffoldkit.test_config")
        assert first is second
        assert len(first.handlers) == 1

    def test_set_verbose(self):
        logger = get_logger("scaffoldkit.test_verbose")

        set_verbose(True)
        assert logger.level == logging.DEBUG
        set_verbose(False)
        assert logger.level == logging.INFO


class TestFileLogging:
    def test_records_reach_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"

        assert setup_file_logging(str(log_file)) == log_file
        get_logger("scaffoldkit.test_file").info("rendered main.go")

        lines = log_file.read_text().splitlines()
        assert lines[-1].endswith("| scaffoldkit.test_file | INFO | rendered main.go")

    def test_verbose_records_debug(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = get_logger("scaffoldkit.test_file_debug")

        setup_file_logging(str(log_file), verbose=True)
        set_verbose(True)
        logger.debug("dropped docs.md")
        set_verbose(False)

        assert "DEBUG | dropped docs.md" in log_file.read_text()

    def test_new_path_replaces_handler(self, tmp_path):
        first = tmp_path / "first.log"
        second = tmp_path / "second.log"
        logger = get_logger("scaffoldkit.test_file_switch")

        setup_file_logging(str(first))
        setup_file_logging(str(second))
        setup_file_logging(str(second))
        logger.info("after switch")

        package_handlers = [h for h in logging.getLogger("scaffoldkit").handlers if isinstance(h, logging.FileHandler)]
        assert len(package_handlers) == 1
        assert "after switch" not in first.read_text()
        assert second.read_text().count("after switch") == 1

    def test_unwritable_directory_falls_back_to_temp(self, tmp_path, monkeypatch):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        monkeypatch.setattr("scaffoldkit.core.logger.tempfile.gettempdir", lambda: str(tmp_path))

        used = setup_file_logging(str(blocker / "nested" / "run.log"))

        assert used == tmp_path / "run.log"
        assert used.exists()
