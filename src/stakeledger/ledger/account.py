# src/stakeledger/ledger/account.py
from __future__ import annotations

"""Per-user staking records and the cooldown state machine.

    IDLE --cooldown()--> COOLING --(cooldown_seconds)--> REDEEM_WINDOW_OPEN
      ^                                                     |          |
      |                         full redeem ----------------+          |
      +------------------------ window lapses (EXPIRED) <--------------+

EXPIRED behaves like IDLE for redemption: the user must call cooldown() again.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from stakeledger.ledger.constants import COOLDOWN_POLICY_FULL, COOLDOWN_POLICY_WEIGHTED
from stakeledger.ledger.reward_index import accrued_between

Json = Dict[str, Any]


class CooldownState(str, Enum):
    IDLE = "idle"
    COOLING = "cooling"
    REDEEM_WINDOW_OPEN = "redeem_window_open"
    EXPIRED = "expired"


@dataclass
class UserAccount:
    staked_balance: int = 0
    reward_snapshot: int = 0
    accrued_rewards: int = 0
    cooldown_timestamp: int = 0
    lock_end_timestamp: int = 0

    def bank_rewards(self, index_now: int) -> int:
        """Move rewards accrued since the last snapshot into accrued_rewards.

        Returns the newly banked amount and moves the snapshot to index_now.
        """
        fresh = accrued_between(self.staked_balance, index_now, self.reward_snapshot)
        self.accrued_rewards = int(self.accrued_rewards) + int(fresh)
        self.reward_snapshot = int(index_now)
        return fresh

    def pending_rewards(self, index_now: int) -> int:
        return int(self.accrued_rewards) + accrued_between(self.staked_balance, index_now, self.reward_snapshot)

    def clear_cooldown(self) -> None:
        self.cooldown_timestamp = 0
        self.lock_end_timestamp = 0

    def to_dict(self) -> Json:
        return {
            "staked_balance": int(self.staked_balance),
            "reward_snapshot": int(self.reward_snapshot),
            "accrued_rewards": int(self.accrued_rewards),
            "cooldown_timestamp": int(self.cooldown_timestamp),
            "lock_end_timestamp": int(self.lock_end_timestamp),
        }


def cooldown_state(
    cooldown_timestamp: int,
    now: int,
    *,
    cooldown_seconds: int,
    unstake_window_seconds: int,
) -> CooldownState:
    start = int(cooldown_timestamp)
    if start <= 0:
        return CooldownState.IDLE
    opens = start + int(cooldown_seconds)
    closes = opens + int(unstake_window_seconds)
    t = int(now)
    if t < opens:
        return CooldownState.COOLING
    if t <= closes:
        return CooldownState.REDEEM_WINDOW_OPEN
    return CooldownState.EXPIRED


def next_cooldown_timestamp(
    *,
    incoming_cooldown: int,
    incoming_amount: int,
    current_cooldown: int,
    current_balance: int,
    now: int,
    cooldown_seconds: int,
    unstake_window_seconds: int,
    policy: str = COOLDOWN_POLICY_WEIGHTED,
) -> int:
    """Cooldown timestamp of an account that receives `incoming_amount` of stake.

    - an idle or lapsed cooldown stays (or becomes) idle
    - "full": the cooldown restarts at `now`
    - "weighted": the start moves towards the incoming timestamp in proportion
      to the amounts; stake arriving without a live cooldown counts as `now`,
      and an incoming cooldown older than the current one never pulls it back
    """
    current = int(current_cooldown)
    if current <= 0:
        return 0

    t = int(now)
    oldest_live = t - int(cooldown_seconds) - int(unstake_window_seconds)
    if current < oldest_live:
        return 0

    if policy == COOLDOWN_POLICY_FULL:
        return t
    if policy != COOLDOWN_POLICY_WEIGHTED:
        raise ValueError(f"unknown cooldown reset policy: {policy!r}")

    incoming = int(incoming_cooldown)
    if incoming <= 0 or incoming < oldest_live:
        incoming = t
    if incoming < current:
        return current

    amount = int(incoming_amount)
    balance = int(current_balance)
    if amount + balance <= 0:
        return current
    return (amount * incoming + balance * current) // (amount + balance)


__all__ = ["CooldownState", "UserAccount", "cooldown_state", "next_cooldown_timestamp"]
