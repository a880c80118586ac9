"""scaffoldkit runtime configuration and settings."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from scaffoldkit.blueprints import BUNDLED_BLUEPRINTS_DIR
from scaffoldkit.core.errors import ConfigurationError


@dataclass
class EngineConfig:
    """Runtime configuration for generation runs.

    Attributes:
        blueprints_dir: Directory holding one sub-directory per blueprint
        max_workers: Render worker threads (None lets the executor decide)
        log_file: Optional path for file logging
    """

    blueprints_dir: Path = BUNDLED_BLUEPRINTS_DIR
    max_workers: Optional[int] = None
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables.

        Environment variables:
            SCAFFOLDKIT_BLUEPRINTS_DIR: Blueprint search directory
            SCAFFOLDKIT_MAX_WORKERS: Number of render worker threads
            SCAFFOLDKIT_LOG_FILE: Log file path

        Returns:
            EngineConfig instance with values from environment or defaults

        Raises:
            ConfigurationError: SCAFFOLDKIT_MAX_WORKERS is not a positive integer
        """
        blueprints_dir = os.getenv("SCAFFOLDKIT_BLUEPRINTS_DIR")
        return cls(
            blueprints_dir=Path(blueprints_dir) if blueprints_dir else BUNDLED_BLUEPRINTS_DIR,
            max_workers=_positive_int_env("SCAFFOLDKIT_MAX_WORKERS"),
            log_file=os.getenv("SCAFFOLDKIT_LOG_FILE"),
        )


def _positive_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a positive integer, got '{raw}'") from None
    if value < 1:
        raise ConfigurationError(f"{name} must be a positive integer, got {value}")
    return value


# Global config instance (can be overridden)
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the global engine configuration.

    Returns:
        EngineConfig instance (creates from environment if not set)
    """
    global _config
    if _config is None:
        _config = EngineConfig.from_env()
    return _config


def set_config(config: Optional[EngineConfig]):
    """Set the global engine configuration.

    Args:
        config: EngineConfig instance to use globally, or None to re-read the environment
    """
    global _config
    _config = config
