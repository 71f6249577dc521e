"""Process configuration from environment variables and an optional .env file."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from derbyvote.derbynet.client import DEFAULT_TIMEOUT


@dataclass
class Config:
    """Runtime configuration.

    Attributes:
        database: Store URL passed to ``open_store`` (``memory://`` or
            ``sqlite:///path``)
        log_level: Name of the logging level (DEBUG, INFO, ...)
        derbynet_url: Default DerbyNet root when none is given or stored
        derbynet_timeout: Per-request DerbyNet timeout in seconds
    """
    database: str = "sqlite:///derbyvote.db"
    log_level: str = "INFO"
    derbynet_url: str = ""
    derbynet_timeout: float = DEFAULT_TIMEOUT


def load_config(env_file: str | Path | None = None) -> Config:
    """Build a Config from the environment, reading ``.env`` first if present.

    Variables already set in the environment win over the file.

    Raises:
        ValueError: If DERBYNET_TIMEOUT is not a positive number
    """
    load_dotenv(env_file)
    defaults = Config()
    timeout = float(os.getenv("DERBYNET_TIMEOUT", defaults.derbynet_timeout))
    if timeout <= 0:
        raise ValueError("DERBYNET_TIMEOUT must be positive")
    return Config(
        database=os.getenv("DERBYVOTE_DATABASE", defaults.database),
        log_level=os.getenv("DERBYVOTE_LOG_LEVEL", defaults.log_level).upper(),
        derbynet_url=os.getenv("DERBYNET_URL", defaults.derbynet_url),
        derbynet_timeout=timeout,
    )
