# src/stakeledger/ledger/__init__.py
"""
Staking Ledger core.

  - reward_index: global reward-per-staked-unit accumulator (fixed point, 1e18)
  - asset_config: emission rate + staked total for the reward-bearing asset
  - account: per-user records and the cooldown state machine
  - settlement: gateway interface the ledger pays through
  - staking: StakingLedger, the only writer of the records above
  - snapshot: strict restore of StakingLedger.to_dict() output

Nothing in this package reads the wall clock; every mutating call takes `now`.
"""

from __future__ import annotations

__all__ = [
    "constants",
    "errors",
    "reward_index",
    "asset_config",
    "account",
    "settlement",
    "staking",
    "snapshot",
]
