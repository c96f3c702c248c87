"""
stock_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- sits beside ``stock_kernel``.  The kernel consumes
    the frozen ``EngineConfig`` it returns but never imports the loader.

Failure modes:
    - ``FileNotFoundError`` -- the selected file does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ValueError`` -- unknown sections or keys, or wrongly typed values.
"""

from __future__ import annotations

import os
from pathlib import Path

from stock_config.loader import load_engine_config
from stock_config.schema import DatabaseConfig, EngineConfig, LoggingConfig, TransferConfig
from stock_kernel.logging_config import get_logger

logger = get_logger("config")

CONFIG_ENV_VAR = "STOCK_ENGINE_CONFIG"

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``path``, then ``$STOCK_ENGINE_CONFIG``,
    then the bundled ``sets/default.yaml``.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else _DEFAULT_CONFIG_PATH
    path = Path(path)

    config = load_engine_config(path)
    logger.info(
        "config_loaded",
        extra={
            "config_path": str(path),
            "dialect": config.database.url.split(":", 1)[0],
            "number_prefix": config.transfers.number_prefix,
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "DatabaseConfig",
    "EngineConfig",
    "LoggingConfig",
    "TransferConfig",
    "get_active_config",
]
