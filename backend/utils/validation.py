import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from models.roster import AllocationStrategy, CopyBehavior

# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")


def validate_eth_address(address: str) -> str:
    """Validate and normalize (lowercase) an Ethereum address."""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Ethereum address format: {address}")

    return address.lower()


def validate_percentage(value: float, name: str) -> float:
    """Validate that a value is a valid percentage (0-100)"""
    if value < 0 or value > 100:
        raise ValueError(f"{name} must be between 0 and 100")
    return value


def validate_limit(value: Optional[int], default: int = 50, max_limit: int = 100) -> int:
    """Clamp a pagination limit into [1, max_limit]."""
    if value is None:
        return default
    if value < 1:
        return 1
    if value > max_limit:
        return max_limit
    return value


class RosterWalletParams(BaseModel):
    """Validated input for adding a wallet to a roster."""

    address: str
    label: Optional[str] = None
    strategy: Optional[str] = None
    copy_behavior: CopyBehavior = CopyBehavior.COPY_ALL
    max_position_size: Optional[float] = Field(default=None, ge=0.0)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_eth_address(v)


class OptimizerSettingsUpdate(BaseModel):
    """Partial update of a workspace's optimizer settings."""

    auto_optimize_enabled: Optional[bool] = None
    auto_select_enabled: Optional[bool] = None
    auto_demote_enabled: Optional[bool] = None
    optimization_interval_hours: Optional[int] = Field(default=None, ge=1, le=168)
    min_roi_30d: Optional[float] = Field(default=None, ge=-1.0, le=10.0)
    min_sharpe: Optional[float] = Field(default=None, ge=-5.0, le=10.0)
    min_win_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    min_trades_30d: Optional[int] = Field(default=None, ge=0, le=10000)
    max_drawdown_pct: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    probation_days: Optional[int] = Field(default=None, ge=0, le=90)
    max_pinned_wallets: Optional[int] = Field(default=None, ge=0, le=3)
    replacement_margin: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    allocation_strategy: Optional[AllocationStrategy] = None

    @field_validator("min_win_rate", "max_drawdown_pct", mode="before")
    @classmethod
    def _percent_to_fraction(cls, v):
        if v is not None and abs(float(v)) > 1.0:
            return float(v) / 100.0
        return v


class OpportunitySelectionUpdate(BaseModel):
    aggressiveness: Optional[str] = None
    exploration_slots: Optional[int] = Field(default=None, ge=0, le=500)
    max_markets_cap: Optional[int] = Field(default=None, ge=1, le=5000)
