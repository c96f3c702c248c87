"""
Configuration schema (``stock_config.schema``).

Frozen dataclasses produced by ``stock_config.loader``.  Defaults here
are the values used when a YAML file omits an optional key.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///stock_engine.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10
    pool_timeout_seconds: float = 30.0
    lock_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class TransferConfig:
    number_prefix: str = "TRF"
    number_width: int = 4
    default_page_size: int = 20
    max_page_size: int = 100

    def __post_init__(self) -> None:
        if not self.number_prefix:
            raise ValueError("transfers.number_prefix must not be empty")
        if self.number_width < 1:
            raise ValueError("transfers.number_width must be >= 1")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError(
                "transfers.default_page_size must be between 1 and max_page_size"
            )


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class EngineConfig:
    """Root configuration object.  One per process."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    transfers: TransferConfig = field(default_factory=TransferConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
