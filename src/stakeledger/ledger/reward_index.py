# src/stakeledger/ledger/reward_index.py
from __future__ import annotations

"""Global reward-per-staked-unit accumulator.

The index is a fixed-point integer scaled by REWARD_INDEX_SCALE. A user's
accrual between two syncs is

    staked_balance * (index_now - index_then) // REWARD_INDEX_SCALE

so rewards can be computed for any account without iterating over all of them.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from stakeledger.ledger.constants import REWARD_INDEX_SCALE
from stakeledger.ledger.errors import InvalidTimestamp

Json = Dict[str, Any]


def accrued_between(balance: int, index_now: int, index_then: int) -> int:
    """Rewards earned by `balance` while the index moved from index_then to index_now."""
    b = int(balance)
    if b <= 0:
        return 0
    delta = int(index_now) - int(index_then)
    if delta <= 0:
        return 0
    return (b * delta) // REWARD_INDEX_SCALE


@dataclass
class RewardIndex:
    cumulative_reward_per_unit: int = 0
    last_update_timestamp: int = 0

    def project(
        self,
        now: int,
        *,
        emission_per_second: int,
        total_staked: int,
        distribution_end: Optional[int] = None,
    ) -> int:
        """Return the index value sync() would produce at `now`, without mutating."""
        t = int(now)
        last = int(self.last_update_timestamp)
        if t < last:
            raise InvalidTimestamp(details={"now": t, "last_update_timestamp": last})

        current = int(self.cumulative_reward_per_unit)
        rate = int(emission_per_second)
        staked = int(total_staked)
        if rate <= 0 or staked <= 0:
            return current

        end = t if distribution_end is None else min(t, int(distribution_end))
        if end <= last:
            return current

        elapsed = end - last
        return current + (rate * elapsed * REWARD_INDEX_SCALE) // staked

    def sync(
        self,
        now: int,
        *,
        emission_per_second: int,
        total_staked: int,
        distribution_end: Optional[int] = None,
    ) -> int:
        """Advance the index to `now` and return the new value.

        Calling twice at the same timestamp is a no-op. The timestamp advances
        even when nothing accrues, so a later stake never earns for time in
        which nobody was staked.
        """
        new_index = self.project(
            now,
            emission_per_second=emission_per_second,
            total_staked=total_staked,
            distribution_end=distribution_end,
        )
        self.cumulative_reward_per_unit = int(new_index)
        self.last_update_timestamp = int(now)
        return self.cumulative_reward_per_unit

    def to_dict(self) -> Json:
        return {
            "cumulative_reward_per_unit": int(self.cumulative_reward_per_unit),
            "last_update_timestamp": int(self.last_update_timestamp),
        }


__all__ = ["RewardIndex", "accrued_between"]
