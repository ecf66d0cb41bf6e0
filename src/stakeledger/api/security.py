# src/stakeledger/api/security.py
from __future__ import annotations

import hmac
import os

from fastapi import Request

from stakeledger.api.errors import ApiError

ADMIN_TOKEN_HEADER = "x-stakeledger-admin-token"


def require_admin_token(request: Request) -> None:
    """Gate administrative routes behind STAKELEDGER_ADMIN_TOKEN.

    Fail-closed: if no token is configured, admin routes are disabled.
    """
    expected = (os.environ.get("STAKELEDGER_ADMIN_TOKEN") or "").strip()
    if not expected:
        cfg = getattr(getattr(request.app.state, "service", None), "config", None)
        expected = str(getattr(cfg, "admin_token", "") or "").strip()
    if not expected:
        raise ApiError.forbidden("admin_disabled", "no admin token configured", {})

    got = (request.headers.get(ADMIN_TOKEN_HEADER) or "").strip()
    if not got or not hmac.compare_digest(got.encode("utf-8"), expected.encode("utf-8")):
        raise ApiError.forbidden("admin_token_invalid", "missing or invalid admin token", {})
