"""
Auction configuration parameters for Sealbid.

Defines supply, capacity, ordering policy, settlement and compute-budget
parameters. Values can be loaded from a dotenv file and overridden with
SEALBID_* environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sealbid.core.types import TieBreakRule
from sealbid.crypto.fhe import BLOCK_FHE_GAS_LIMIT
from sealbid.utils.logger import setup_logging


# Identities are stored as EUINT16
MAX_BID_COUNT = 65535

ENV_PREFIX = "SEALBID_"


class AuctionConfig(BaseModel):
    """Per-auction configuration. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    # Supply and capacity
    total_quantity: int = Field(gt=0)  # Q, fixed for the auction's lifetime
    max_bid_count: int = Field(default=10_000, ge=1, le=MAX_BID_COUNT)
    tie_break_rule: TieBreakRule = TieBreakRule.PRICE_ID

    # Settlement
    payment_penalty: int = Field(default=0, ge=0)  # charged on invalid bids
    decryption_window: int = Field(default=100, ge=1)  # oracle deadline, in ticks

    # Compute budget
    fhe_gas_limit: int = Field(default=BLOCK_FHE_GAS_LIMIT, gt=0)
    step_weights: Tuple[int, int, int, int] = (1, 2, 1, 1)

    # Paths
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")

    @field_validator("tie_break_rule", mode="before")
    @classmethod
    def _parse_rule(cls, value):
        if isinstance(value, str) and not value.isdigit():
            try:
                return TieBreakRule[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown tie-break rule: {value}") from None
        if isinstance(value, str):
            return int(value)
        return value

    @field_validator("step_weights", mode="before")
    @classmethod
    def _parse_weights(cls, value):
        if isinstance(value, str):
            value = tuple(int(part) for part in value.split(",") if part.strip())
        return value

    @field_validator("step_weights")
    @classmethod
    def _check_weights(cls, value: Tuple[int, int, int, int]):
        if any(w < 1 for w in value):
            raise ValueError("Step weights must be >= 1")
        return value

    def ensure_dirs(self) -> None:
        """Create data and log directories."""
        self.data_dir.mkdir(exist_ok=True, parents=True)
        self.log_dir.mkdir(exist_ok=True, parents=True)

    def configure_logging(self, level: int = logging.INFO) -> None:
        """Create directories and log to the console plus log_dir/sealbid.log."""
        self.ensure_dirs()
        setup_logging(level=level, log_dir=str(self.log_dir), log_to_file=True)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, str]:
    values = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX) and value is not None:
            values[key[len(ENV_PREFIX):].lower()] = value
    return values


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides,
) -> AuctionConfig:
    """
    Load configuration from a dotenv file and the environment.

    Precedence (lowest first): defaults, dotenv file, SEALBID_* environment
    variables, keyword overrides.

    Args:
        config_path: Optional path to a dotenv file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        AuctionConfig instance

    Raises:
        pydantic.ValidationError: if a value is missing or out of range
    """
    values: Dict[str, object] = {}
    if config_path:
        values.update(_env_overrides(dotenv_values(config_path)))
    values.update(_env_overrides(os.environ if environ is None else environ))
    values.update(overrides)
    return AuctionConfig(**values)


__all__ = ["AuctionConfig", "load_config", "MAX_BID_COUNT"]
