from __future__ import annotations

import random

import pytest

from stakeledger.ledger.account import CooldownState
from stakeledger.ledger.errors import (
    CooldownNotMatured,
    InsufficientBalance,
    InsufficientRewards,
    InvalidAmount,
    InvalidTimestamp,
    NothingStaked,
    SettlementFailed,
    StakingError,
)
from stakeledger.ledger.settlement import InMemoryTokenGateway
from stakeledger.ledger.staking import StakingLedger
from stakeledger.runtime import metrics

T0 = 1_700_000_000
DAY = 24 * 60 * 60
MANAGER = "EMISSION_MANAGER"


def _mk_ledger(*, emission: int = 1, users=("alice", "bob", "carol"), **kw) -> tuple[StakingLedger, InMemoryTokenGateway]:
    gw = InMemoryTokenGateway({u: 200_000_000 for u in users})
    gw.mint("REWARDS_VAULT", 10_000_000_000)
    params = {
        "gateway": gw,
        "cooldown_seconds": 10,
        "unstake_window_seconds": DAY,
        "distribution_end": T0 + 365 * DAY,
        "start_timestamp": T0,
    }
    params.update(kw)
    ledger = StakingLedger(**params)
    if emission:
        ledger.configure_assets(
            MANAGER,
            [{"emissionPerSecond": emission, "totalStaked": 0, "underlyingAsset": ledger.staked_asset}],
            now=T0,
        )
    return ledger, gw


def test_single_staker_earns_full_emission_over_five_days() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)

    assert ledger.get_total_rewards_balance("alice", now=T0 + 5 * DAY) == 432_000


def test_second_staker_halves_the_per_user_rate() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    t1 = T0 + 5 * DAY
    before = ledger.get_total_rewards_balance("alice", now=t1)

    ledger.stake("bob", "bob", 500_000, now=t1)
    after_alice = ledger.get_total_rewards_balance("alice", now=t1 + DAY)
    after_bob = ledger.get_total_rewards_balance("bob", now=t1 + DAY)

    assert before == 432_000
    assert after_alice - before == DAY // 2
    assert after_bob == DAY // 2


def test_accrual_is_linear_in_time_and_balance() -> None:
    ledger, _gw = _mk_ledger(emission=3)
    ledger.stake("alice", "alice", 1_000, now=T0)
    ledger.stake("bob", "bob", 2_000, now=T0)

    a1 = ledger.get_total_rewards_balance("alice", now=T0 + 1_000)
    a2 = ledger.get_total_rewards_balance("alice", now=T0 + 2_000)
    b1 = ledger.get_total_rewards_balance("bob", now=T0 + 1_000)

    assert a1 == 1_000
    assert a2 == 2 * a1
    assert b1 == 2 * a1


def test_read_surface_does_not_mutate() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    before = ledger.to_dict()

    ledger.get_total_rewards_balance("alice", now=T0 + DAY)
    ledger.get_user_lock_end_timestamp("alice")
    ledger.user_count()
    ledger.get_asset_emission_per_second()

    assert ledger.to_dict() == before


def test_stake_moves_tokens_into_custody_and_counts_user() -> None:
    ledger, gw = _mk_ledger()
    r = ledger.stake("alice", "bob", 1_000, now=T0)

    assert r["applied"] == "STAKE"
    assert gw.balance_of("alice") == 200_000_000 - 1_000
    assert gw.balance_of(ledger.custody_account) == 1_000
    assert ledger.get_account("bob")["staked_balance"] == 1_000
    assert ledger.get_account("alice") is None
    assert ledger.user_count() == 1
    assert ledger.total_staked() == 1_000


@pytest.mark.parametrize("amount", [0, -5, True, 1.5, "10"])
def test_stake_rejects_invalid_amounts(amount) -> None:
    ledger, _gw = _mk_ledger()
    with pytest.raises(InvalidAmount):
        ledger.stake("alice", "alice", amount, now=T0)
    assert ledger.user_count() == 0


def test_stake_rejects_empty_account_ids() -> None:
    ledger, _gw = _mk_ledger()
    with pytest.raises(StakingError) as ei:
        ledger.stake("alice", "  ", 10, now=T0)
    assert ei.value.code == "invalid_account"


def test_operations_reject_time_moving_backwards() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 10, now=T0 + 100)
    with pytest.raises(InvalidTimestamp):
        ledger.stake("alice", "alice", 10, now=T0 + 50)
    assert ledger.get_account("alice")["staked_balance"] == 10


def test_cooldown_requires_stake() -> None:
    ledger, _gw = _mk_ledger()
    with pytest.raises(NothingStaked):
        ledger.cooldown("alice", now=T0)


def test_cooldown_sets_lock_end() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    assert ledger.get_user_lock_end_timestamp("alice") == 0

    r = ledger.cooldown("alice", now=T0 + 100)
    assert r["cooldown_timestamp"] == T0 + 100
    assert ledger.get_user_lock_end_timestamp("alice") == T0 + 110
    assert ledger.get_cooldown_state("alice", now=T0 + 105) is CooldownState.COOLING
    assert ledger.get_cooldown_state("alice", now=T0 + 110) is CooldownState.REDEEM_WINDOW_OPEN


def test_redeem_before_cooldown_matures_fails() -> None:
    ledger, gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)

    with pytest.raises(CooldownNotMatured):
        ledger.redeem("alice", "alice", 1, now=T0 + 1)

    ledger.cooldown("alice", now=T0 + 10)
    with pytest.raises(CooldownNotMatured) as ei:
        ledger.redeem("alice", "alice", 1, now=T0 + 19)
    assert ei.value.reason == "insufficient_cooldown"
    assert gw.balance_of(ledger.custody_account) == 500_000


def test_redeem_after_window_lapses_fails() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    ledger.cooldown("alice", now=T0 + 10)

    with pytest.raises(CooldownNotMatured) as ei:
        ledger.redeem("alice", "alice", 1, now=T0 + 10 + 10 + DAY + 1)
    assert ei.value.reason == "unstake_window_finished"

    # Re-triggering the cooldown makes the funds reachable again.
    t = T0 + 10 + 10 + DAY + 1
    ledger.cooldown("alice", now=t)
    ledger.redeem("alice", "alice", 1, now=t + 10)
    assert ledger.get_account("alice")["staked_balance"] == 499_999


def test_partial_then_full_redeem_inside_window() -> None:
    ledger, gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    ledger.cooldown("alice", now=T0 + 100)

    ledger.redeem("alice", "carol", 200_000, now=T0 + 200)
    acct = ledger.get_account("alice")
    assert acct["staked_balance"] == 300_000
    assert acct["cooldown_timestamp"] == T0 + 100
    assert gw.balance_of("carol") == 200_000_000 + 200_000
    assert ledger.user_count() == 1

    ledger.redeem("alice", "alice", 300_000, now=T0 + 300)
    acct = ledger.get_account("alice")
    assert acct["staked_balance"] == 0
    assert acct["cooldown_timestamp"] == 0
    assert ledger.user_count() == 0
    assert ledger.total_staked() == 0


def test_redeem_more_than_staked_fails() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 100, now=T0)
    ledger.cooldown("alice", now=T0)
    with pytest.raises(InsufficientBalance):
        ledger.redeem("alice", "alice", 101, now=T0 + 10)


def test_zero_balance_account_keeps_its_rewards() -> None:
    ledger, gw = _mk_ledger()
    ledger.stake("alice", "alice", 1_000, now=T0)
    ledger.cooldown("alice", now=T0 + 90)
    ledger.redeem("alice", "alice", 1_000, now=T0 + 100)

    assert ledger.get_total_rewards_balance("alice", now=T0 + 10_000) == 100
    ledger.claim_rewards("alice", "alice", 100, now=T0 + 10_000)
    assert gw.balance_of("alice") == 200_000_000 + 100


def test_claim_more_than_accrued_fails_and_exact_claim_zeroes() -> None:
    ledger, gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    t = T0 + DAY
    accrued = ledger.get_total_rewards_balance("alice", now=t)
    assert accrued == DAY

    with pytest.raises(InsufficientRewards):
        ledger.claim_rewards("alice", "alice", accrued + 1, now=t)

    r = ledger.claim_rewards("alice", "bob", accrued, now=t)
    assert r["amount"] == accrued
    assert ledger.get_account("alice")["accrued_rewards"] == 0
    assert ledger.get_total_rewards_balance("alice", now=t) == 0
    assert gw.balance_of("bob") == 200_000_000 + accrued


def test_claim_all_with_none() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 10, now=T0)
    r = ledger.claim_rewards("alice", "alice", None, now=T0 + 50)
    assert r["amount"] == 50

    with pytest.raises(InsufficientRewards):
        ledger.claim_rewards("alice", "alice", None, now=T0 + 50)


def test_claim_zero_is_invalid() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 10, now=T0)
    with pytest.raises(InvalidAmount):
        ledger.claim_rewards("alice", "alice", 0, now=T0 + 50)


def test_failed_settlement_rolls_back_everything() -> None:
    ledger, gw = _mk_ledger()
    ledger.stake("alice", "alice", 500_000, now=T0)
    ledger.cooldown("alice", now=T0 + 10)
    before = ledger.to_dict()

    gw.fail_next()
    with pytest.raises(SettlementFailed):
        ledger.stake("bob", "bob", 1_000, now=T0 + 20)
    assert ledger.to_dict() == before
    assert ledger.user_count() == 1

    gw.fail_next()
    with pytest.raises(SettlementFailed):
        ledger.redeem("alice", "alice", 500_000, now=T0 + 30)
    assert ledger.to_dict() == before

    gw.fail_next()
    with pytest.raises(SettlementFailed):
        ledger.claim_rewards("alice", "alice", 1, now=T0 + 40)
    assert ledger.to_dict() == before


def test_insufficient_funds_at_gateway_is_a_settlement_failure() -> None:
    ledger, _gw = _mk_ledger()
    with pytest.raises(SettlementFailed):
        ledger.stake("alice", "alice", 200_000_001, now=T0)
    assert ledger.total_staked() == 0


def test_gateway_exception_becomes_settlement_failure() -> None:
    class _ExplodingGateway:
        def transfer(self, source: str, destination: str, amount: int) -> bool:
            raise RuntimeError("rpc down")

    ledger = StakingLedger(gateway=_ExplodingGateway(), start_timestamp=T0)
    with pytest.raises(SettlementFailed) as ei:
        ledger.stake("alice", "alice", 1, now=T0)
    assert ei.value.reason == "transfer_raised"
    assert ledger.get_account("alice") is None


def test_weighted_cooldown_on_top_up() -> None:
    ledger, _gw = _mk_ledger(cooldown_seconds=100, unstake_window_seconds=1_000)
    ledger.stake("alice", "alice", 100, now=T0)
    ledger.cooldown("alice", now=T0 + 100)
    ledger.stake("alice", "alice", 100, now=T0 + 150)

    acct = ledger.get_account("alice")
    assert acct["cooldown_timestamp"] == T0 + 125
    assert acct["lock_end_timestamp"] == T0 + 225


def test_full_cooldown_policy_restarts_on_top_up() -> None:
    ledger, _gw = _mk_ledger(cooldown_seconds=100, unstake_window_seconds=1_000, cooldown_policy="full")
    ledger.stake("alice", "alice", 100, now=T0)
    ledger.cooldown("alice", now=T0 + 100)
    ledger.stake("alice", "alice", 1, now=T0 + 150)
    assert ledger.get_account("alice")["cooldown_timestamp"] == T0 + 150


def test_stake_after_lapsed_window_clears_cooldown() -> None:
    ledger, _gw = _mk_ledger(cooldown_seconds=100, unstake_window_seconds=1_000)
    ledger.stake("alice", "alice", 100, now=T0)
    ledger.cooldown("alice", now=T0 + 100)
    ledger.stake("alice", "alice", 100, now=T0 + 1_300)

    acct = ledger.get_account("alice")
    assert acct["cooldown_timestamp"] == 0
    assert acct["lock_end_timestamp"] == 0


def test_rewards_stop_at_distribution_end() -> None:
    ledger, _gw = _mk_ledger(distribution_end=T0 + 1_000)
    ledger.stake("alice", "alice", 1_000, now=T0)
    assert ledger.get_total_rewards_balance("alice", now=T0 + 5_000) == 1_000


def test_metrics_count_operations_and_rejections() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 10, now=T0)
    with pytest.raises(InvalidAmount):
        ledger.stake("alice", "alice", 0, now=T0)

    snap = metrics.snapshot()
    assert snap["counters"]["ops_stake_total"] == 1
    assert snap["counters"]["ops_rejected_total"] == 1
    assert snap["gauges"]["user_count"] == 1
    assert snap["gauges"]["total_staked"] == 10


def test_invariants_hold_over_random_operation_sequences() -> None:
    users = ["u0", "u1", "u2", "u3"]
    ledger, _gw = _mk_ledger(users=users, emission=7, cooldown_seconds=5, unstake_window_seconds=50)
    rng = random.Random(1337)

    now = T0
    last_index = 0
    for _ in range(400):
        now += rng.randint(0, 20)
        user = rng.choice(users)
        op = rng.choice(["stake", "cooldown", "redeem", "claim", "transfer"])
        try:
            if op == "stake":
                ledger.stake(user, user, rng.randint(1, 5_000), now=now)
            elif op == "cooldown":
                ledger.cooldown(user, now=now)
            elif op == "redeem":
                ledger.redeem(user, user, rng.randint(1, 5_000), now=now)
            elif op == "claim":
                ledger.claim_rewards(user, user, None, now=now)
            else:
                ledger.transfer_stake(user, rng.choice(users), rng.randint(1, 5_000), now=now)
        except StakingError:
            pass

        snap = ledger.to_dict()
        balances = [a["staked_balance"] for a in snap["accounts"].values()]
        assert snap["asset"]["total_staked"] == sum(balances)
        assert ledger.user_count() == sum(1 for b in balances if b > 0)
        assert snap["index"]["cumulative_reward_per_unit"] >= last_index
        last_index = snap["index"]["cumulative_reward_per_unit"]


def test_cooldown_at_timestamp_zero_is_rejected() -> None:
    gw = InMemoryTokenGateway({"alice": 1_000})
    ledger = StakingLedger(gateway=gw)
    ledger.stake("alice", "alice", 100, now=0)

    with pytest.raises(InvalidTimestamp) as ei:
        ledger.cooldown("alice", now=0)
    assert ei.value.reason == "cooldown_at_zero"
    assert ledger.get_account("alice")["cooldown_timestamp"] == 0

    ledger.cooldown("alice", now=1)
    assert ledger.get_cooldown_state("alice", now=11) is CooldownState.REDEEM_WINDOW_OPEN
    ledger.redeem("alice", "alice", 100, now=11)
    assert gw.balance_of("alice") == 1_000


def test_redeem_with_backwards_time_reports_invalid_timestamp() -> None:
    ledger, _gw = _mk_ledger()
    ledger.stake("alice", "alice", 10, now=T0 + 100)

    with pytest.raises(InvalidTimestamp):
        ledger.redeem("bob", "bob", 1, now=T0 + 50)
    with pytest.raises(InvalidTimestamp):
        ledger.transfer_stake("bob", "alice", 1, now=T0 + 50)
