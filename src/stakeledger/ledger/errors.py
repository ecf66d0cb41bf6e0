# src/stakeledger/ledger/errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

Json = Dict[str, Any]


@dataclass
class StakingError(Exception):
    """Canonical error type for staking ledger operations.

    Every rejected operation raises one of these before any state is committed.
    """

    code: str
    reason: str
    details: Json = field(default_factory=dict)

    def __str__(self) -> str:
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


@dataclass
class InvalidAmount(StakingError):
    code: str = "invalid_amount"
    reason: str = "amount_must_be_positive"
    details: Json = field(default_factory=dict)


@dataclass
class InsufficientBalance(StakingError):
    code: str = "insufficient_balance"
    reason: str = "amount_exceeds_staked_balance"
    details: Json = field(default_factory=dict)


@dataclass
class InsufficientRewards(StakingError):
    code: str = "insufficient_rewards"
    reason: str = "amount_exceeds_accrued_rewards"
    details: Json = field(default_factory=dict)


@dataclass
class CooldownNotMatured(StakingError):
    code: str = "cooldown_not_matured"
    reason: str = "redeem_window_closed"
    details: Json = field(default_factory=dict)


@dataclass
class NothingStaked(StakingError):
    code: str = "nothing_staked"
    reason: str = "staked_balance_is_zero"
    details: Json = field(default_factory=dict)


@dataclass
class SettlementFailed(StakingError):
    code: str = "settlement_failed"
    reason: str = "transfer_rejected"
    details: Json = field(default_factory=dict)


@dataclass
class InvalidConfig(StakingError):
    code: str = "invalid_config"
    reason: str = "invalid_asset_config"
    details: Json = field(default_factory=dict)


@dataclass
class Forbidden(StakingError):
    code: str = "forbidden"
    reason: str = "caller_not_authorized"
    details: Json = field(default_factory=dict)


@dataclass
class InvalidTimestamp(StakingError):
    code: str = "invalid_timestamp"
    reason: str = "time_moved_backwards"
    details: Json = field(default_factory=dict)


__all__ = [
    "StakingError",
    "InvalidAmount",
    "InsufficientBalance",
    "InsufficientRewards",
    "CooldownNotMatured",
    "NothingStaked",
    "SettlementFailed",
    "InvalidConfig",
    "Forbidden",
    "InvalidTimestamp",
]
