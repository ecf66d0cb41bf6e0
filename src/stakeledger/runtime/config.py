# src/stakeledger/runtime/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from stakeledger.ledger.constants import (
    COOLDOWN_POLICIES,
    COOLDOWN_POLICY_WEIGHTED,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_CUSTODY_ACCOUNT,
    DEFAULT_DISTRIBUTION_DURATION_SECONDS,
    DEFAULT_EMISSION_MANAGER,
    DEFAULT_REWARDS_VAULT,
    DEFAULT_STAKED_ASSET,
    DEFAULT_UNSTAKE_WINDOW_SECONDS,
)

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    if v is None or (isinstance(v, str) and not v.strip()):
        return int(default)
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"expected an integer, got: {v!r}") from e


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_balances(v: Any, default: Dict[str, int]) -> Dict[str, int]:
    # A JSON object in the config file, or a JSON string from the environment.
    if v is None or (isinstance(v, str) and not v.strip()):
        return dict(default)
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"initial_balances must be a JSON object, got: {v!r}") from e
    if not isinstance(v, dict):
        raise ValueError(f"initial_balances must be a JSON object, got: {type(v).__name__}")
    out: Dict[str, int] = {}
    for k, amount in v.items():
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError(f"initial_balances[{k!r}] must be an integer")
        out[str(k)] = int(amount)
    return out


@dataclass(frozen=True)
class LedgerConfig:
    mode: str  # "dev" | "test" | "prod"

    staked_asset: str
    cooldown_seconds: int
    unstake_window_seconds: int
    distribution_duration_seconds: int
    cooldown_policy: str  # "weighted" | "full"

    custody_account: str
    rewards_vault: str
    emission_manager: str

    # Unix seconds the distribution starts at; 0 means "first boot".
    genesis_time: int

    # SQLite file for snapshots + journal; empty keeps the ledger in memory.
    db_path: str

    # Opening balances of the in-memory settlement gateway (first boot only).
    initial_balances: Dict[str, int]

    api_host: str
    api_port: int
    admin_token: str

    log_level: str


_ALLOWED_MODES = {"dev", "test", "prod"}


def validate_ledger_config(cfg: LedgerConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    for name in ("staked_asset", "custody_account", "rewards_vault", "emission_manager"):
        v = getattr(cfg, name)
        if not isinstance(v, str) or not v.strip():
            raise ValueError(f"{name} must be a non-empty string")

    if len({cfg.custody_account, cfg.rewards_vault}) != 2:
        raise ValueError("custody_account and rewards_vault must be distinct accounts")

    if int(cfg.cooldown_seconds) < 0:
        raise ValueError(f"cooldown_seconds must be >= 0; got: {cfg.cooldown_seconds}")
    if int(cfg.unstake_window_seconds) <= 0:
        raise ValueError(f"unstake_window_seconds must be > 0; got: {cfg.unstake_window_seconds}")
    if int(cfg.distribution_duration_seconds) <= 0:
        raise ValueError(f"distribution_duration_seconds must be > 0; got: {cfg.distribution_duration_seconds}")
    if int(cfg.genesis_time) < 0:
        raise ValueError(f"genesis_time must be >= 0; got: {cfg.genesis_time}")

    if cfg.cooldown_policy not in COOLDOWN_POLICIES:
        raise ValueError(f"cooldown_policy must be one of {COOLDOWN_POLICIES}; got: {cfg.cooldown_policy!r}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")

    for account, amount in dict(cfg.initial_balances).items():
        if not str(account).strip():
            raise ValueError("initial_balances keys must be non-empty account ids")
        if int(amount) < 0:
            raise ValueError(f"initial_balances[{account!r}] must be >= 0; got: {amount}")

    if mode == "prod" and not str(cfg.admin_token or "").strip():
        # configure_assets would be unreachable over HTTP
        raise ValueError("admin_token is required in prod mode")


def default_ledger_config() -> LedgerConfig:
    return LedgerConfig(
        mode="dev",
        staked_asset=DEFAULT_STAKED_ASSET,
        cooldown_seconds=DEFAULT_COOLDOWN_SECONDS,
        unstake_window_seconds=DEFAULT_UNSTAKE_WINDOW_SECONDS,
        distribution_duration_seconds=DEFAULT_DISTRIBUTION_DURATION_SECONDS,
        cooldown_policy=COOLDOWN_POLICY_WEIGHTED,
        custody_account=DEFAULT_CUSTODY_ACCOUNT,
        rewards_vault=DEFAULT_REWARDS_VAULT,
        emission_manager=DEFAULT_EMISSION_MANAGER,
        genesis_time=0,
        db_path="",
        initial_balances={},
        api_host="127.0.0.1",
        api_port=8080,
        admin_token="",
        log_level="INFO",
    )


def _merge(base: LedgerConfig, raw: Json) -> LedgerConfig:
    return LedgerConfig(
        mode=_as_str(raw.get("mode"), base.mode).strip().lower(),
        staked_asset=_as_str(raw.get("staked_asset"), base.staked_asset),
        cooldown_seconds=_as_int(raw.get("cooldown_seconds"), base.cooldown_seconds),
        unstake_window_seconds=_as_int(raw.get("unstake_window_seconds"), base.unstake_window_seconds),
        distribution_duration_seconds=_as_int(
            raw.get("distribution_duration_seconds"), base.distribution_duration_seconds
        ),
        cooldown_policy=_as_str(raw.get("cooldown_policy"), base.cooldown_policy).strip().lower(),
        custody_account=_as_str(raw.get("custody_account"), base.custody_account),
        rewards_vault=_as_str(raw.get("rewards_vault"), base.rewards_vault),
        emission_manager=_as_str(raw.get("emission_manager"), base.emission_manager),
        genesis_time=_as_int(raw.get("genesis_time"), base.genesis_time),
        db_path=str(raw["db_path"]) if raw.get("db_path") is not None else base.db_path,
        initial_balances=_as_balances(raw.get("initial_balances"), base.initial_balances),
        api_host=_as_str(raw.get("api_host"), base.api_host),
        api_port=_as_int(raw.get("api_port"), base.api_port),
        admin_token=str(raw["admin_token"]) if raw.get("admin_token") is not None else base.admin_token,
        log_level=_as_str(raw.get("log_level"), base.log_level).strip().upper(),
    )


def read_ledger_config_file(path: str) -> LedgerConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("ledger config must be a JSON object")

    cfg = _merge(default_ledger_config(), raw)
    validate_ledger_config(cfg)
    return cfg


_ENV_FIELDS = (
    "mode",
    "staked_asset",
    "cooldown_seconds",
    "unstake_window_seconds",
    "distribution_duration_seconds",
    "cooldown_policy",
    "custody_account",
    "rewards_vault",
    "emission_manager",
    "genesis_time",
    "db_path",
    "initial_balances",
    "api_host",
    "api_port",
    "admin_token",
    "log_level",
)


def env_overrides() -> Json:
    """Collect STAKELEDGER_<FIELD> variables that are set."""
    out: Json = {}
    for name in _ENV_FIELDS:
        v = os.environ.get(f"STAKELEDGER_{name.upper()}")
        if v is not None:
            out[name] = v
    return out


def load_ledger_config(*, config_path: Optional[str] = None) -> LedgerConfig:
    """Defaults, then the JSON config file (if any), then STAKELEDGER_* env vars."""
    p = config_path or os.environ.get("STAKELEDGER_CONFIG_PATH")
    base = read_ledger_config_file(p) if p else default_ledger_config()

    cfg = _merge(base, env_overrides())
    validate_ledger_config(cfg)
    return cfg


def with_genesis_time(cfg: LedgerConfig, genesis_time: int) -> LedgerConfig:
    return replace(cfg, genesis_time=int(genesis_time))
