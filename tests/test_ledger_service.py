from __future__ import annotations

import sqlite3
from dataclasses import replace
from pathlib import Path

import pytest

from stakeledger.ledger.errors import InsufficientRewards, SettlementFailed
from stakeledger.ledger.settlement import InMemoryTokenGateway
from stakeledger.runtime.clock import ManualClock
from stakeledger.runtime.config import default_ledger_config
from stakeledger.runtime.ledger_boot import build_ledger_service
from stakeledger.runtime.sqlite_db import LedgerStore, SqliteDB

GENESIS = 1_700_000_000


def _cfg(tmp_path: Path, **kw):
    return replace(default_ledger_config(), mode="test", db_path=str(tmp_path / "ledger.sqlite"), **kw)


def _gateway() -> InMemoryTokenGateway:
    gw = InMemoryTokenGateway({"alice": 1_000_000, "bob": 1_000_000})
    gw.mint("REWARDS_VAULT", 10**12)
    return gw


def _configure(svc, emission: int = 1) -> None:
    svc.configure_assets(
        "EMISSION_MANAGER",
        [{"emissionPerSecond": emission, "totalStaked": svc.ledger.total_staked(), "underlyingAsset": "stkTVB"}],
    )


def test_fresh_boot_uses_clock_for_genesis(tmp_path: Path) -> None:
    clock = ManualClock(GENESIS)
    svc = build_ledger_service(_cfg(tmp_path), gateway=_gateway(), clock=clock)

    assert svc.config.genesis_time == GENESIS
    assert svc.ledger.distribution_end == GENESIS + 365 * 24 * 60 * 60
    assert svc.ledger.reward_index()["last_update_timestamp"] == GENESIS
    assert svc.store is not None and svc.store.exists()


def test_operations_use_clock_and_are_journaled(tmp_path: Path) -> None:
    clock = ManualClock(GENESIS)
    svc = build_ledger_service(_cfg(tmp_path), gateway=_gateway(), clock=clock)
    _configure(svc)

    r = svc.stake("alice", "alice", 1_000)
    assert r["now"] == GENESIS
    assert r["seq"] == 2

    clock.advance(100)
    assert svc.get_total_rewards_balance("alice") == 100
    svc.claim_rewards("alice", "alice")

    ops = svc.journal()
    assert [o["applied"] for o in ops] == ["CONFIGURE_ASSETS", "STAKE", "CLAIM_REWARDS"]
    assert [o["seq"] for o in ops] == [1, 2, 3]
    assert [o["seq"] for o in svc.journal(after_seq=2)] == [3]


def test_restart_restores_latest_snapshot(tmp_path: Path) -> None:
    gw = _gateway()
    clock = ManualClock(GENESIS)
    svc = build_ledger_service(_cfg(tmp_path), gateway=gw, clock=clock)
    _configure(svc, emission=2)
    svc.stake("alice", "alice", 500)
    svc.stake("bob", "bob", 500)
    clock.advance(1_000)

    # genesis_time in the new config is ignored: the snapshot wins
    restarted = build_ledger_service(_cfg(tmp_path, genesis_time=1), gateway=gw, clock=clock)

    assert restarted.ledger.to_dict() == svc.ledger.to_dict()
    assert restarted.ledger.user_count() == 2
    assert restarted.get_total_rewards_balance("alice") == 1_000
    assert len(restarted.journal()) == 3


def test_rejected_operations_are_not_journaled(tmp_path: Path) -> None:
    gw = _gateway()
    svc = build_ledger_service(_cfg(tmp_path), gateway=gw, clock=ManualClock(GENESIS))
    _configure(svc)

    with pytest.raises(InsufficientRewards):
        svc.claim_rewards("alice", "alice", 1)
    gw.fail_next()
    with pytest.raises(SettlementFailed):
        svc.stake("alice", "alice", 10)

    assert [o["applied"] for o in svc.journal()] == ["CONFIGURE_ASSETS"]


def test_in_memory_service_has_no_journal() -> None:
    cfg = replace(default_ledger_config(), mode="test", genesis_time=GENESIS)
    svc = build_ledger_service(cfg, gateway=_gateway(), clock=ManualClock(GENESIS + 5))

    assert svc.store is None
    assert svc.ledger.reward_index()["last_update_timestamp"] == GENESIS
    r = svc.stake("alice", "alice", 10, now=GENESIS + 10)
    assert "seq" not in r
    assert svc.journal() == []


def test_store_rejects_receipt_without_op(tmp_path: Path) -> None:
    store = LedgerStore(db=SqliteDB(path=str(tmp_path / "s.sqlite")))
    with pytest.raises(ValueError):
        store.commit({"version": 1}, {"now": 1})


def test_store_read_requires_a_snapshot(tmp_path: Path) -> None:
    store = LedgerStore(db=SqliteDB(path=str(tmp_path / "nested" / "s.sqlite")))
    assert store.exists() is False
    with pytest.raises(FileNotFoundError):
        store.read()


def test_storage_failure_keeps_the_operation_and_journals_it_later(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    gw = _gateway()
    clock = ManualClock(GENESIS)
    svc = build_ledger_service(_cfg(tmp_path), gateway=gw, clock=clock)
    real_commit_many = svc.store.commit_many
    calls = {"n": 0}

    def _flaky_commit_many(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise sqlite3.OperationalError("disk I/O error")
        return real_commit_many(*args, **kwargs)

    monkeypatch.setattr(svc.store, "commit_many", _flaky_commit_many)

    r = svc.stake("alice", "alice", 100)
    assert r["persisted"] is False
    assert "seq" not in r
    assert svc.ledger.total_staked() == 100
    assert gw.balance_of(svc.ledger.custody_account) == 100
    assert svc.persist_backlog == 1

    clock.advance(5)
    r = svc.stake("bob", "bob", 50)
    assert r["persisted"] is True
    assert svc.persist_backlog == 0
    assert [(o["applied"], o["sender"]) for o in svc.journal()] == [("STAKE", "alice"), ("STAKE", "bob")]

    restarted = build_ledger_service(_cfg(tmp_path), gateway=gw, clock=clock)
    assert restarted.ledger.total_staked() == 150


def test_in_memory_gateway_is_funded_from_config_and_survives_restart(tmp_path: Path) -> None:
    clock = ManualClock(GENESIS)
    cfg = _cfg(tmp_path, initial_balances={"alice": 1_000, "REWARDS_VAULT": 10**9})
    svc = build_ledger_service(cfg, clock=clock)
    _configure(svc)

    svc.stake("alice", "alice", 400)
    clock.advance(100)
    svc.cooldown("alice")

    # opening balances only apply to a fresh database
    restarted = build_ledger_service(_cfg(tmp_path, initial_balances={"alice": 5}), clock=clock)
    gw = restarted.gateway
    assert gw.balance_of("alice") == 600
    assert gw.balance_of("STAKING_CUSTODY") == 400

    clock.advance(10)
    restarted.redeem("alice", "alice", 400)
    restarted.claim_rewards("alice", "alice")
    assert gw.balance_of("alice") == 1_000 + 110
    assert gw.balance_of("STAKING_CUSTODY") == 0


def test_prod_refuses_unfunded_in_memory_gateway(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path, admin_token="s3cret")
    cfg = replace(cfg, mode="prod")
    with pytest.raises(ValueError, match="initial_balances"):
        build_ledger_service(cfg, clock=ManualClock(GENESIS))

    svc = build_ledger_service(replace(cfg, initial_balances={"alice": 1}), clock=ManualClock(GENESIS))
    assert svc.gateway.balance_of("alice") == 1
