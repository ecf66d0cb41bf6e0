# src/stakeledger/api/routes.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from stakeledger.api.errors import ApiError
from stakeledger.api.schemas import (
    ClaimRequest,
    ConfigureAssetsRequest,
    CooldownRequest,
    RedeemRequest,
    StakeRequest,
    TransferStakeRequest,
)
from stakeledger.api.security import require_admin_token
from stakeledger.runtime import metrics

Json = Dict[str, Any]

router = APIRouter()


def _service(request: Request):
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise ApiError.internal("not_ready", "ledger service not attached to app.state", {})
    return svc


def _ok(receipt: Json) -> Json:
    return {"ok": True, "receipt": receipt}


@router.get("/v1/health")
def v1_health(request: Request):
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        return {"ok": True, "ready": False}
    return {"ok": True, "ready": True, "persist_backlog": svc.persist_backlog}


@router.post("/v1/stake")
def v1_stake(body: StakeRequest, request: Request):
    return _ok(_service(request).stake(body.sender, body.target, body.amount, now=body.now))


@router.post("/v1/cooldown")
def v1_cooldown(body: CooldownRequest, request: Request):
    return _ok(_service(request).cooldown(body.sender, now=body.now))


@router.post("/v1/redeem")
def v1_redeem(body: RedeemRequest, request: Request):
    return _ok(_service(request).redeem(body.sender, body.target, body.amount, now=body.now))


@router.post("/v1/claim")
def v1_claim(body: ClaimRequest, request: Request):
    return _ok(_service(request).claim_rewards(body.sender, body.target, body.amount, now=body.now))


@router.post("/v1/transfer")
def v1_transfer(body: TransferStakeRequest, request: Request):
    return _ok(_service(request).transfer_stake(body.sender, body.recipient, body.amount, now=body.now))


@router.post("/v1/assets/configure")
def v1_configure_assets(body: ConfigureAssetsRequest, request: Request):
    require_admin_token(request)
    svc = _service(request)
    entries = [e.model_dump() for e in body.assets]
    # The token proves the caller is the operator, who acts as emission manager.
    return _ok(svc.configure_assets(svc.ledger.emission_manager, entries, now=body.now))


@router.get("/v1/accounts/{user}")
def v1_account(user: str, request: Request, now: Optional[int] = None):
    svc = _service(request)
    acct = svc.ledger.get_account(user)
    if acct is None:
        raise ApiError.not_found("account_not_found", "account has never staked", {"user": user})
    t = svc.resolve_now(now)
    return {
        "ok": True,
        "user": user,
        "account": acct,
        "cooldown_state": svc.ledger.get_cooldown_state(user, now=t).value,
        "now": t,
    }


@router.get("/v1/accounts/{user}/rewards")
def v1_account_rewards(user: str, request: Request, now: Optional[int] = None):
    svc = _service(request)
    t = svc.resolve_now(now)
    return {"ok": True, "user": user, "now": t, "total_rewards_balance": svc.ledger.get_total_rewards_balance(user, now=t)}


@router.get("/v1/accounts/{user}/lock_end")
def v1_account_lock_end(user: str, request: Request):
    svc = _service(request)
    return {"ok": True, "user": user, "lock_end_timestamp": svc.ledger.get_user_lock_end_timestamp(user)}


@router.get("/v1/balances/{account}")
def v1_balance(account: str, request: Request):
    state = _service(request).gateway_state()
    if state is None:
        raise ApiError.not_found("balances_unavailable", "settlement gateway does not expose balances", {})
    return {"ok": True, "account": account, "balance": int(state["balances"].get(account, 0))}


@router.get("/v1/users/count")
def v1_user_count(request: Request):
    return {"ok": True, "user_count": _service(request).ledger.user_count()}


@router.get("/v1/assets/emission")
def v1_asset_emission(request: Request):
    ledger = _service(request).ledger
    return {
        "ok": True,
        "underlying_asset": ledger.staked_asset,
        "emission_per_second": ledger.get_asset_emission_per_second(),
        "total_staked": ledger.total_staked(),
        "distribution_end": ledger.distribution_end,
    }


@router.get("/v1/journal")
def v1_journal(request: Request, limit: int = 100, after_seq: int = 0):
    ops = _service(request).journal(limit=max(1, min(int(limit), 1000)), after_seq=max(0, int(after_seq)))
    return {"ok": True, "ops": ops}


@router.get("/v1/metrics")
def v1_metrics(format: str = "json"):
    if str(format).strip().lower() == "prometheus":
        return PlainTextResponse(metrics.format_prometheus())
    return {"ok": True, "metrics": metrics.snapshot()}
