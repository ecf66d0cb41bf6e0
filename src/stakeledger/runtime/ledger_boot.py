# src/stakeledger/runtime/ledger_boot.py
from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from stakeledger.ledger.settlement import InMemoryTokenGateway, SettlementGateway
from stakeledger.ledger.staking import StakingLedger
from stakeledger.runtime.clock import Clock, SystemClock
from stakeledger.runtime.config import LedgerConfig, load_ledger_config, with_genesis_time
from stakeledger.runtime.metrics import inc_counter, set_gauge
from stakeledger.runtime.sqlite_db import LedgerStore, SqliteDB
from stakeledger.runtime.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("stakeledger.boot")


class LedgerService:
    """StakingLedger + clock + optional SQLite persistence.

    Callers that do not pass `now` get clock.now(). Each successful operation
    is persisted (ledger snapshot, in-memory gateway balances, receipt).

    By the time the store is written the operation has already taken effect:
    tokens moved and the ledger committed. A storage failure therefore does
    not fail the operation. The receipt comes back with persisted=False, is
    kept in a backlog and is journaled together with the next successful
    commit, whose snapshot covers every earlier operation.
    """

    def __init__(
        self,
        *,
        ledger: StakingLedger,
        gateway: SettlementGateway,
        clock: Clock,
        store: Optional[LedgerStore] = None,
        config: Optional[LedgerConfig] = None,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.clock = clock
        self.store = store
        self.config = config
        self._lock = threading.Lock()
        self._backlog: List[Json] = []

    def resolve_now(self, now: Optional[int] = None) -> int:
        return int(now) if now is not None else int(self.clock.now())

    @property
    def persist_backlog(self) -> int:
        with self._lock:
            return len(self._backlog)

    def gateway_state(self) -> Optional[Json]:
        if isinstance(self.gateway, InMemoryTokenGateway):
            return self.gateway.to_dict()
        return None

    def _apply(self, fn: Callable[[int], Json], now: Optional[int]) -> Json:
        with self._lock:
            receipt = fn(self.resolve_now(now))
            if self.store is None:
                return receipt

            pending = self._backlog + [receipt]
            try:
                seqs = self.store.commit_many(self.ledger.to_dict(), pending, gateway_state=self.gateway_state())
            except (sqlite3.Error, OSError) as e:
                self._backlog = pending
                inc_counter("persist_failed_total")
                set_gauge("persist_backlog", len(pending))
                log_event(
                    _log,
                    "persist_failed",
                    level=logging.ERROR,
                    op=str(receipt.get("applied")),
                    backlog=len(pending),
                    error=str(e),
                )
                return dict(receipt, persisted=False)

            if self._backlog:
                log_event(_log, "persist_recovered", level=logging.WARNING, backlog=len(self._backlog))
                set_gauge("persist_backlog", 0)
            self._backlog = []
            return dict(receipt, seq=seqs[-1], persisted=True)

    def stake(self, sender: str, target: str, amount: int, *, now: Optional[int] = None) -> Json:
        return self._apply(lambda t: self.ledger.stake(sender, target, amount, now=t), now)

    def cooldown(self, sender: str, *, now: Optional[int] = None) -> Json:
        return self._apply(lambda t: self.ledger.cooldown(sender, now=t), now)

    def redeem(self, sender: str, target: str, amount: int, *, now: Optional[int] = None) -> Json:
        return self._apply(lambda t: self.ledger.redeem(sender, target, amount, now=t), now)

    def claim_rewards(
        self, sender: str, target: str, amount: Optional[int] = None, *, now: Optional[int] = None
    ) -> Json:
        return self._apply(lambda t: self.ledger.claim_rewards(sender, target, amount, now=t), now)

    def transfer_stake(self, sender: str, recipient: str, amount: int, *, now: Optional[int] = None) -> Json:
        return self._apply(lambda t: self.ledger.transfer_stake(sender, recipient, amount, now=t), now)

    def configure_assets(self, caller: str, entries: Iterable[Any], *, now: Optional[int] = None) -> Json:
        return self._apply(lambda t: self.ledger.configure_assets(caller, entries, now=t), now)

    def get_total_rewards_balance(self, user: str, *, now: Optional[int] = None) -> int:
        return self.ledger.get_total_rewards_balance(user, now=self.resolve_now(now))

    def journal(self, *, limit: int = 100, after_seq: int = 0) -> List[Json]:
        if self.store is None:
            return []
        return self.store.journal(limit=limit, after_seq=after_seq)


def _new_ledger(cfg: LedgerConfig, gateway: SettlementGateway) -> StakingLedger:
    return StakingLedger(
        gateway=gateway,
        staked_asset=cfg.staked_asset,
        cooldown_seconds=cfg.cooldown_seconds,
        unstake_window_seconds=cfg.unstake_window_seconds,
        distribution_end=int(cfg.genesis_time) + int(cfg.distribution_duration_seconds),
        cooldown_policy=cfg.cooldown_policy,
        custody_account=cfg.custody_account,
        rewards_vault=cfg.rewards_vault,
        emission_manager=cfg.emission_manager,
        start_timestamp=int(cfg.genesis_time),
    )


def _in_memory_gateway(cfg: LedgerConfig, store: Optional[LedgerStore]) -> InMemoryTokenGateway:
    """Stored gateway balances win; otherwise start from cfg.initial_balances."""
    state = store.read_gateway() if store is not None else None
    if state is not None:
        return InMemoryTokenGateway.from_dict(state)

    gw = InMemoryTokenGateway(cfg.initial_balances)
    funded = any(int(v) > 0 for v in cfg.initial_balances.values())
    if str(cfg.mode).strip().lower() == "prod" and not funded:
        # every stake would be rejected by the gateway
        raise ValueError("prod mode with the in-memory gateway requires funded initial_balances")
    return gw


def build_ledger_service(
    cfg: Optional[LedgerConfig] = None,
    *,
    gateway: Optional[SettlementGateway] = None,
    clock: Optional[Clock] = None,
) -> LedgerService:
    """Build a LedgerService from an explicit config or, if omitted, from env.

    With a db_path the latest snapshot is restored; a fresh database gets the
    genesis snapshot written immediately. Without an explicit gateway the
    in-memory one is used, restored from the store or funded from
    initial_balances.
    """
    c = cfg or load_ledger_config()
    clk = clock if clock is not None else SystemClock()
    if int(c.genesis_time) == 0:
        c = with_genesis_time(c, clk.now())

    store: Optional[LedgerStore] = None
    if str(c.db_path or "").strip():
        store = LedgerStore(db=SqliteDB(path=c.db_path))

    gw = gateway if gateway is not None else _in_memory_gateway(c, store)
    gw_state = gw.to_dict() if isinstance(gw, InMemoryTokenGateway) else None

    if store is not None and store.exists():
        ledger = StakingLedger.from_dict(store.read(), gateway=gw)
        log_event(_log, "ledger_restored", db_path=c.db_path, user_count=ledger.user_count())
    else:
        ledger = _new_ledger(c, gw)
        if store is not None:
            store.write(ledger.to_dict(), gateway_state=gw_state)
        log_event(
            _log,
            "ledger_created",
            db_path=c.db_path,
            genesis_time=int(c.genesis_time),
            distribution_end=ledger.distribution_end,
            funded_accounts=len(gw_state["balances"]) if gw_state is not None else None,
        )

    return LedgerService(ledger=ledger, gateway=gw, clock=clk, store=store, config=c)
