# src/stakeledger/ledger/staking.py
from __future__ import annotations

"""StakingLedger: stake, cooldown, redeem and reward claims.

Every mutating operation follows the same shape:

  1) copy the index, the asset config and the touched accounts
  2) sync the copied index to `now` and bank each touched account's accrual
  3) validate and apply the operation's effect on the copies
  4) call the settlement gateway (at most once)
  5) commit the copies

A failure at any step raises a StakingError and leaves the ledger untouched.
All public methods run under a single re-entrant lock, so operations are
serialized and never observe each other's partial state.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from stakeledger.ledger.account import (
    CooldownState,
    UserAccount,
    cooldown_state,
    next_cooldown_timestamp,
)
from stakeledger.ledger.asset_config import AssetConfig, parse_asset_config_entries
from stakeledger.ledger.constants import (
    COOLDOWN_POLICIES,
    COOLDOWN_POLICY_WEIGHTED,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_CUSTODY_ACCOUNT,
    DEFAULT_EMISSION_MANAGER,
    DEFAULT_REWARDS_VAULT,
    DEFAULT_STAKED_ASSET,
    DEFAULT_UNSTAKE_WINDOW_SECONDS,
    SNAPSHOT_VERSION,
)
from stakeledger.ledger.errors import (
    CooldownNotMatured,
    Forbidden,
    InsufficientBalance,
    InsufficientRewards,
    InvalidAmount,
    InvalidConfig,
    InvalidTimestamp,
    NothingStaked,
    SettlementFailed,
    StakingError,
)
from stakeledger.ledger.reward_index import RewardIndex
from stakeledger.ledger.settlement import SettlementGateway
from stakeledger.ledger.snapshot import parse_snapshot
from stakeledger.runtime.metrics import inc_counter, set_gauge
from stakeledger.runtime.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("stakeledger.ledger")


def _as_amount(v: Any, *, field: str = "amount") -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(v, bool) or not isinstance(v, int):
        raise InvalidAmount(reason="amount_not_int", details={"field": field, "type": type(v).__name__})
    if v <= 0:
        raise InvalidAmount(details={"field": field, "amount": int(v)})
    return int(v)


def _as_account_id(v: Any, *, field: str) -> str:
    s = v.strip() if isinstance(v, str) else ""
    if not s:
        raise StakingError("invalid_account", "account_id_empty", {"field": field})
    return s


def _as_timestamp(v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise InvalidTimestamp(reason="timestamp_not_non_negative_int", details={"now": repr(v)})
    return int(v)


class StakingLedger:
    def __init__(
        self,
        *,
        gateway: SettlementGateway,
        staked_asset: str = DEFAULT_STAKED_ASSET,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        unstake_window_seconds: int = DEFAULT_UNSTAKE_WINDOW_SECONDS,
        distribution_end: Optional[int] = None,
        cooldown_policy: str = COOLDOWN_POLICY_WEIGHTED,
        custody_account: str = DEFAULT_CUSTODY_ACCOUNT,
        rewards_vault: str = DEFAULT_REWARDS_VAULT,
        emission_manager: str = DEFAULT_EMISSION_MANAGER,
        start_timestamp: int = 0,
    ) -> None:
        if int(cooldown_seconds) < 0 or int(unstake_window_seconds) < 0:
            raise ValueError("cooldown_seconds and unstake_window_seconds must be >= 0")
        if cooldown_policy not in COOLDOWN_POLICIES:
            raise ValueError(f"cooldown_policy must be one of {COOLDOWN_POLICIES}; got: {cooldown_policy!r}")

        self._gateway = gateway
        self._lock = threading.RLock()

        self.staked_asset = str(staked_asset)
        self.cooldown_seconds = int(cooldown_seconds)
        self.unstake_window_seconds = int(unstake_window_seconds)
        self.distribution_end = None if distribution_end is None else int(distribution_end)
        self.cooldown_policy = str(cooldown_policy)
        self.custody_account = str(custody_account)
        self.rewards_vault = str(rewards_vault)
        self.emission_manager = str(emission_manager)

        self._asset = AssetConfig(underlying_asset=self.staked_asset)
        self._index = RewardIndex(last_update_timestamp=int(start_timestamp))
        self._accounts: Dict[str, UserAccount] = {}
        self._user_count = 0

    # ---- internals ----

    def _synced(self, now: int) -> Tuple[RewardIndex, AssetConfig]:
        index = replace(self._index)
        asset = replace(self._asset)
        index.sync(
            now,
            emission_per_second=asset.emission_per_second,
            total_staked=asset.total_staked,
            distribution_end=self.distribution_end,
        )
        return index, asset

    def _account_copy(self, user: str) -> UserAccount:
        acct = self._accounts.get(user)
        return replace(acct) if acct is not None else UserAccount()

    def _lock_end_for(self, cooldown_ts: int) -> int:
        return int(cooldown_ts) + self.cooldown_seconds if int(cooldown_ts) > 0 else 0

    def _settle(self, source: str, destination: str, amount: int, *, op: str) -> None:
        details = {"op": op, "source": source, "destination": destination, "amount": int(amount)}
        try:
            ok = self._gateway.transfer(source, destination, int(amount))
        except Exception as e:
            raise SettlementFailed(reason="transfer_raised", details={**details, "error": str(e)}) from e
        if not ok:
            raise SettlementFailed(details=details)

    def _commit(self, index: RewardIndex, asset: AssetConfig, accounts: Mapping[str, UserAccount]) -> None:
        for user, acct in accounts.items():
            before = self._accounts.get(user)
            was_staked = before is not None and before.staked_balance > 0
            is_staked = acct.staked_balance > 0
            if is_staked and not was_staked:
                self._user_count += 1
            elif was_staked and not is_staked:
                self._user_count -= 1
            self._accounts[user] = acct
        self._index = index
        self._asset = asset

        set_gauge("user_count", self._user_count)
        set_gauge("total_staked", self._asset.total_staked)

    def _run(self, op: str, fn: Callable[[], Json]) -> Json:
        with self._lock:
            try:
                receipt = fn()
            except StakingError as e:
                inc_counter("ops_rejected_total")
                log_event(_log, "op_rejected", level=logging.WARNING, op=op, code=e.code, reason=e.reason)
                raise
        inc_counter(f"ops_{op}_total")
        log_event(_log, op, **receipt)
        return receipt

    # ---- operations ----

    def stake(self, sender: str, target: str, amount: int, *, now: int) -> Json:
        """Stake `amount` from `sender` on behalf of `target`."""

        def _apply() -> Json:
            src = _as_account_id(sender, field="sender")
            dst = _as_account_id(target, field="target")
            amt = _as_amount(amount)
            t = _as_timestamp(now)

            index, asset = self._synced(t)
            acct = self._account_copy(dst)
            banked = acct.bank_rewards(index.cumulative_reward_per_unit)

            acct.cooldown_timestamp = next_cooldown_timestamp(
                incoming_cooldown=0,
                incoming_amount=amt,
                current_cooldown=acct.cooldown_timestamp,
                current_balance=acct.staked_balance,
                now=t,
                cooldown_seconds=self.cooldown_seconds,
                unstake_window_seconds=self.unstake_window_seconds,
                policy=self.cooldown_policy,
            )
            acct.lock_end_timestamp = self._lock_end_for(acct.cooldown_timestamp)
            acct.staked_balance += amt
            asset.total_staked += amt

            self._settle(src, self.custody_account, amt, op="stake")
            self._commit(index, asset, {dst: acct})
            return {
                "applied": "STAKE",
                "sender": src,
                "target": dst,
                "amount": amt,
                "now": t,
                "rewards_banked": banked,
                "staked_balance": acct.staked_balance,
                "total_staked": asset.total_staked,
                "cooldown_timestamp": acct.cooldown_timestamp,
            }

        return self._run("stake", _apply)

    def cooldown(self, sender: str, *, now: int) -> Json:
        """Start the cooldown for `sender`'s whole staked balance."""

        def _apply() -> Json:
            user = _as_account_id(sender, field="sender")
            t = _as_timestamp(now)
            if t == 0:
                # cooldown_timestamp 0 means idle
                raise InvalidTimestamp(reason="cooldown_at_zero", details={"now": t})

            index, asset = self._synced(t)
            acct = self._account_copy(user)
            if acct.staked_balance <= 0:
                raise NothingStaked(details={"user": user})
            acct.bank_rewards(index.cumulative_reward_per_unit)
            acct.cooldown_timestamp = t
            acct.lock_end_timestamp = self._lock_end_for(t)
            self._commit(index, asset, {user: acct})
            return {
                "applied": "COOLDOWN",
                "user": user,
                "now": t,
                "cooldown_timestamp": acct.cooldown_timestamp,
                "redeem_window_opens": acct.lock_end_timestamp,
                "redeem_window_closes": acct.lock_end_timestamp + self.unstake_window_seconds,
            }

        return self._run("cooldown", _apply)

    def redeem(self, sender: str, target: str, amount: int, *, now: int) -> Json:
        """Withdraw `amount` of `sender`'s stake to `target` inside the redeem window."""

        def _apply() -> Json:
            src = _as_account_id(sender, field="sender")
            dst = _as_account_id(target, field="target")
            amt = _as_amount(amount)
            t = _as_timestamp(now)

            index, asset = self._synced(t)
            acct = self._account_copy(src)
            state = cooldown_state(
                acct.cooldown_timestamp,
                t,
                cooldown_seconds=self.cooldown_seconds,
                unstake_window_seconds=self.unstake_window_seconds,
            )
            if state is not CooldownState.REDEEM_WINDOW_OPEN:
                reason = "unstake_window_finished" if state is CooldownState.EXPIRED else "insufficient_cooldown"
                raise CooldownNotMatured(
                    reason=reason,
                    details={"user": src, "state": state.value, "cooldown_timestamp": acct.cooldown_timestamp},
                )
            if amt > acct.staked_balance:
                raise InsufficientBalance(details={"user": src, "amount": amt, "staked_balance": acct.staked_balance})

            banked = acct.bank_rewards(index.cumulative_reward_per_unit)
            acct.staked_balance -= amt
            asset.total_staked -= amt
            if acct.staked_balance == 0:
                acct.clear_cooldown()

            self._settle(self.custody_account, dst, amt, op="redeem")
            self._commit(index, asset, {src: acct})
            return {
                "applied": "REDEEM",
                "sender": src,
                "target": dst,
                "amount": amt,
                "now": t,
                "rewards_banked": banked,
                "staked_balance": acct.staked_balance,
                "total_staked": asset.total_staked,
            }

        return self._run("redeem", _apply)

    def claim_rewards(self, sender: str, target: str, amount: Optional[int] = None, *, now: int) -> Json:
        """Pay `amount` of `sender`'s rewards to `target`; None claims everything."""

        def _apply() -> Json:
            src = _as_account_id(sender, field="sender")
            dst = _as_account_id(target, field="target")
            amt = None if amount is None else _as_amount(amount)
            t = _as_timestamp(now)

            index, asset = self._synced(t)
            acct = self._account_copy(src)
            acct.bank_rewards(index.cumulative_reward_per_unit)

            to_claim = acct.accrued_rewards if amt is None else amt
            if to_claim <= 0 or to_claim > acct.accrued_rewards:
                raise InsufficientRewards(
                    details={"user": src, "amount": to_claim, "accrued_rewards": acct.accrued_rewards}
                )
            acct.accrued_rewards -= to_claim

            self._settle(self.rewards_vault, dst, to_claim, op="claim_rewards")
            self._commit(index, asset, {src: acct})
            return {
                "applied": "CLAIM_REWARDS",
                "sender": src,
                "target": dst,
                "amount": to_claim,
                "now": t,
                "accrued_rewards": acct.accrued_rewards,
            }

        return self._run("claim_rewards", _apply)

    def transfer_stake(self, sender: str, recipient: str, amount: int, *, now: int) -> Json:
        """Move staked balance between accounts; no tokens leave custody."""

        def _apply() -> Json:
            src = _as_account_id(sender, field="sender")
            dst = _as_account_id(recipient, field="recipient")
            amt = _as_amount(amount)
            t = _as_timestamp(now)

            index, asset = self._synced(t)
            from_acct = self._account_copy(src)
            if amt > from_acct.staked_balance:
                raise InsufficientBalance(
                    details={"user": src, "amount": amt, "staked_balance": from_acct.staked_balance}
                )
            if src == dst:
                return {"applied": "TRANSFER_STAKE", "sender": src, "recipient": dst, "amount": amt, "now": t, "noop": True}

            to_acct = self._account_copy(dst)
            from_acct.bank_rewards(index.cumulative_reward_per_unit)
            to_acct.bank_rewards(index.cumulative_reward_per_unit)

            to_acct.cooldown_timestamp = next_cooldown_timestamp(
                incoming_cooldown=from_acct.cooldown_timestamp,
                incoming_amount=amt,
                current_cooldown=to_acct.cooldown_timestamp,
                current_balance=to_acct.staked_balance,
                now=t,
                cooldown_seconds=self.cooldown_seconds,
                unstake_window_seconds=self.unstake_window_seconds,
                policy=self.cooldown_policy,
            )
            to_acct.lock_end_timestamp = self._lock_end_for(to_acct.cooldown_timestamp)
            to_acct.staked_balance += amt
            from_acct.staked_balance -= amt
            if from_acct.staked_balance == 0:
                from_acct.clear_cooldown()

            self._commit(index, asset, {src: from_acct, dst: to_acct})
            return {
                "applied": "TRANSFER_STAKE",
                "sender": src,
                "recipient": dst,
                "amount": amt,
                "now": t,
                "sender_balance": from_acct.staked_balance,
                "recipient_balance": to_acct.staked_balance,
                "recipient_cooldown_timestamp": to_acct.cooldown_timestamp,
            }

        return self._run("transfer_stake", _apply)

    def configure_assets(self, caller: str, entries: Iterable[Any], *, now: int) -> Json:
        """Replace emission parameters atomically.

        Accrual up to `now` is settled at the old rate before the new one applies.
        """

        def _apply() -> Json:
            who = _as_account_id(caller, field="caller")
            t = _as_timestamp(now)

            if who != self.emission_manager:
                raise Forbidden(details={"caller": who})
            parsed = parse_asset_config_entries(entries)
            for item in parsed:
                if item.underlying_asset != self.staked_asset:
                    raise InvalidConfig(
                        reason="unknown_asset",
                        details={"underlying_asset": item.underlying_asset, "staked_asset": self.staked_asset},
                    )
                if int(item.total_staked) != self._asset.total_staked:
                    raise InvalidConfig(
                        reason="total_staked_mismatch",
                        details={"given": int(item.total_staked), "ledger": self._asset.total_staked},
                    )

            index, asset = self._synced(t)
            old_rate = asset.emission_per_second
            for item in parsed:
                asset.emission_per_second = int(item.emission_per_second)

            self._commit(index, asset, {})
            return {
                "applied": "CONFIGURE_ASSETS",
                "caller": who,
                "now": t,
                "underlying_asset": asset.underlying_asset,
                "old_emission_per_second": old_rate,
                "emission_per_second": asset.emission_per_second,
                "index": index.cumulative_reward_per_unit,
            }

        return self._run("configure_assets", _apply)

    # ---- read surface ----

    def get_total_rewards_balance(self, user: str, *, now: int) -> int:
        """Banked plus not-yet-synced rewards of `user` at `now` (no mutation)."""
        t = _as_timestamp(now)
        with self._lock:
            shadow = self._index.project(
                t,
                emission_per_second=self._asset.emission_per_second,
                total_staked=self._asset.total_staked,
                distribution_end=self.distribution_end,
            )
            acct = self._accounts.get(str(user))
            if acct is None:
                return 0
            return acct.pending_rewards(shadow)

    def get_user_lock_end_timestamp(self, user: str) -> int:
        with self._lock:
            acct = self._accounts.get(str(user))
            return int(acct.lock_end_timestamp) if acct is not None else 0

    def get_cooldown_state(self, user: str, *, now: int) -> CooldownState:
        t = _as_timestamp(now)
        with self._lock:
            acct = self._accounts.get(str(user))
            return cooldown_state(
                acct.cooldown_timestamp if acct is not None else 0,
                t,
                cooldown_seconds=self.cooldown_seconds,
                unstake_window_seconds=self.unstake_window_seconds,
            )

    def user_count(self) -> int:
        with self._lock:
            return int(self._user_count)

    def get_asset_emission_per_second(self) -> int:
        with self._lock:
            return int(self._asset.emission_per_second)

    def total_staked(self) -> int:
        with self._lock:
            return int(self._asset.total_staked)

    def get_account(self, user: str) -> Optional[Json]:
        with self._lock:
            acct = self._accounts.get(str(user))
            return acct.to_dict() if acct is not None else None

    def reward_index(self) -> Json:
        with self._lock:
            return self._index.to_dict()

    # ---- snapshots ----

    def to_dict(self) -> Json:
        with self._lock:
            return {
                "version": SNAPSHOT_VERSION,
                "params": {
                    "staked_asset": self.staked_asset,
                    "cooldown_seconds": self.cooldown_seconds,
                    "unstake_window_seconds": self.unstake_window_seconds,
                    "distribution_end": self.distribution_end,
                    "cooldown_policy": self.cooldown_policy,
                    "custody_account": self.custody_account,
                    "rewards_vault": self.rewards_vault,
                    "emission_manager": self.emission_manager,
                },
                "asset": self._asset.to_dict(),
                "index": self._index.to_dict(),
                "accounts": {u: a.to_dict() for u, a in sorted(self._accounts.items())},
            }

    @classmethod
    def from_dict(cls, data: Any, *, gateway: SettlementGateway) -> "StakingLedger":
        snap = parse_snapshot(data)
        params = snap.params
        ledger = cls(
            gateway=gateway,
            staked_asset=params["staked_asset"],
            cooldown_seconds=params["cooldown_seconds"],
            unstake_window_seconds=params["unstake_window_seconds"],
            distribution_end=params["distribution_end"],
            cooldown_policy=params["cooldown_policy"],
            custody_account=params["custody_account"],
            rewards_vault=params["rewards_vault"],
            emission_manager=params["emission_manager"],
        )
        ledger._asset = snap.asset
        ledger._index = snap.index
        ledger._accounts = dict(snap.accounts)
        ledger._user_count = sum(1 for a in snap.accounts.values() if a.staked_balance > 0)
        return ledger


__all__ = ["StakingLedger"]
