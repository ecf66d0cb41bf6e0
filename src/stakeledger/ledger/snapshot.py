"""stakeledger.ledger.snapshot

Strict parsing of StakingLedger.to_dict() snapshots.

Snapshots are restored from disk or from operators, so every field is coerced
and checked; a snapshot that would violate a ledger invariant is rejected with
ValueError instead of being repaired:

  - asset.total_staked must equal the sum of account balances
  - all balances, rewards and timestamps must be non-negative ints
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from stakeledger.ledger.account import UserAccount
from stakeledger.ledger.asset_config import AssetConfig
from stakeledger.ledger.constants import COOLDOWN_POLICIES, SNAPSHOT_VERSION
from stakeledger.ledger.reward_index import RewardIndex

Json = Dict[str, Any]


def _coerce_int(v: Any, *, field: str, minimum: Optional[int] = 0) -> int:
    try:
        # bool is an int subclass; disallow it explicitly
        if isinstance(v, bool):
            raise ValueError("bool is not a valid int")
        out = int(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"snapshot schema error: field '{field}' must be int-coercible (got {type(v).__name__})") from e
    if minimum is not None and out < minimum:
        raise ValueError(f"snapshot schema error: field '{field}' must be >= {minimum} (got {out})")
    return out


def _coerce_str(v: Any, *, field: str) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"snapshot schema error: field '{field}' must be a non-empty string")
    return v.strip()


def _require_dict(v: Any, *, field: str) -> Json:
    if isinstance(v, dict):
        return v
    raise ValueError(f"snapshot schema error: field '{field}' must be dict (got {type(v).__name__})")


@dataclass
class LedgerSnapshot:
    params: Json
    asset: AssetConfig
    index: RewardIndex
    accounts: Dict[str, UserAccount]


def _parse_params(raw: Json) -> Json:
    dist_end = raw.get("distribution_end")
    policy = _coerce_str(raw.get("cooldown_policy"), field="params.cooldown_policy")
    if policy not in COOLDOWN_POLICIES:
        raise ValueError(f"snapshot schema error: params.cooldown_policy must be one of {COOLDOWN_POLICIES}")
    return {
        "staked_asset": _coerce_str(raw.get("staked_asset"), field="params.staked_asset"),
        "cooldown_seconds": _coerce_int(raw.get("cooldown_seconds"), field="params.cooldown_seconds"),
        "unstake_window_seconds": _coerce_int(
            raw.get("unstake_window_seconds"), field="params.unstake_window_seconds"
        ),
        "distribution_end": None
        if dist_end is None
        else _coerce_int(dist_end, field="params.distribution_end"),
        "cooldown_policy": policy,
        "custody_account": _coerce_str(raw.get("custody_account"), field="params.custody_account"),
        "rewards_vault": _coerce_str(raw.get("rewards_vault"), field="params.rewards_vault"),
        "emission_manager": _coerce_str(raw.get("emission_manager"), field="params.emission_manager"),
    }


def _parse_account(user: str, raw: Any) -> UserAccount:
    a = _require_dict(raw, field=f"accounts['{user}']")
    return UserAccount(
        staked_balance=_coerce_int(a.get("staked_balance", 0), field=f"accounts['{user}'].staked_balance"),
        reward_snapshot=_coerce_int(a.get("reward_snapshot", 0), field=f"accounts['{user}'].reward_snapshot"),
        accrued_rewards=_coerce_int(a.get("accrued_rewards", 0), field=f"accounts['{user}'].accrued_rewards"),
        cooldown_timestamp=_coerce_int(
            a.get("cooldown_timestamp", 0), field=f"accounts['{user}'].cooldown_timestamp"
        ),
        lock_end_timestamp=_coerce_int(
            a.get("lock_end_timestamp", 0), field=f"accounts['{user}'].lock_end_timestamp"
        ),
    )


def parse_snapshot(data: Any) -> LedgerSnapshot:
    d = _require_dict(data, field="<root>")

    version = _coerce_int(d.get("version"), field="version")
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"snapshot schema error: version={version} != SNAPSHOT_VERSION={SNAPSHOT_VERSION}")

    params = _parse_params(_require_dict(d.get("params"), field="params"))

    asset_raw = _require_dict(d.get("asset"), field="asset")
    asset = AssetConfig(
        underlying_asset=_coerce_str(asset_raw.get("underlying_asset"), field="asset.underlying_asset"),
        emission_per_second=_coerce_int(asset_raw.get("emission_per_second"), field="asset.emission_per_second"),
        total_staked=_coerce_int(asset_raw.get("total_staked"), field="asset.total_staked"),
    )
    if asset.underlying_asset != params["staked_asset"]:
        raise ValueError("snapshot schema error: asset.underlying_asset does not match params.staked_asset")

    index_raw = _require_dict(d.get("index"), field="index")
    index = RewardIndex(
        cumulative_reward_per_unit=_coerce_int(
            index_raw.get("cumulative_reward_per_unit"), field="index.cumulative_reward_per_unit"
        ),
        last_update_timestamp=_coerce_int(index_raw.get("last_update_timestamp"), field="index.last_update_timestamp"),
    )

    accounts: Dict[str, UserAccount] = {}
    for user, raw in _require_dict(d.get("accounts", {}), field="accounts").items():
        uid = _coerce_str(user, field="accounts.<user>")
        acct = _parse_account(uid, raw)
        if acct.reward_snapshot > index.cumulative_reward_per_unit:
            raise ValueError(f"snapshot schema error: accounts['{uid}'].reward_snapshot is ahead of the index")
        accounts[uid] = acct

    staked_sum = sum(a.staked_balance for a in accounts.values())
    if staked_sum != asset.total_staked:
        raise ValueError(
            f"snapshot schema error: asset.total_staked={asset.total_staked} != sum of balances={staked_sum}"
        )

    return LedgerSnapshot(params=params, asset=asset, index=index, accounts=accounts)


__all__ = ["LedgerSnapshot", "parse_snapshot"]
