# src/stakeledger/ledger/constants.py
from __future__ import annotations

"""Staking ledger constants.

Defaults mirror the reference deployment:
- staked token is also the reward token
- 10 second cooldown
- 24 hour redeem window
- 365 day reward distribution
"""

# Fixed-point precision of the reward-per-unit index.
REWARD_INDEX_DECIMALS: int = 18
REWARD_INDEX_SCALE: int = 10**REWARD_INDEX_DECIMALS

DEFAULT_COOLDOWN_SECONDS: int = 10
DEFAULT_UNSTAKE_WINDOW_SECONDS: int = 24 * 60 * 60
DEFAULT_DISTRIBUTION_DURATION_SECONDS: int = 365 * 24 * 60 * 60

DEFAULT_STAKED_ASSET: str = "stkTVB"
DEFAULT_CUSTODY_ACCOUNT: str = "STAKING_CUSTODY"
DEFAULT_REWARDS_VAULT: str = "REWARDS_VAULT"
DEFAULT_EMISSION_MANAGER: str = "EMISSION_MANAGER"

COOLDOWN_POLICY_WEIGHTED: str = "weighted"
COOLDOWN_POLICY_FULL: str = "full"
COOLDOWN_POLICIES = (COOLDOWN_POLICY_WEIGHTED, COOLDOWN_POLICY_FULL)

# Snapshot format version for LedgerStore / to_dict().
SNAPSHOT_VERSION: int = 1
