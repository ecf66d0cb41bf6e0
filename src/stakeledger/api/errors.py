# src/stakeledger/api/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from stakeledger.ledger.errors import (
    CooldownNotMatured,
    Forbidden,
    InsufficientBalance,
    InsufficientRewards,
    NothingStaked,
    SettlementFailed,
    StakingError,
)


@dataclass(slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def forbidden(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(403, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def bad_gateway(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(502, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_json(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}}


def api_error_from_staking(e: StakingError) -> ApiError:
    """Map ledger errors to HTTP status codes.

    - 403: caller lacks the capability (configure_assets)
    - 409: request is well-formed but the account's state does not allow it
    - 502: the settlement gateway refused the transfer
    - 400: everything else (bad amounts, bad config entries, bad timestamps)
    """
    if isinstance(e, Forbidden):
        return ApiError.forbidden(e.code, e.reason, e.details)
    if isinstance(e, SettlementFailed):
        return ApiError.bad_gateway(e.code, e.reason, e.details)
    if isinstance(e, (CooldownNotMatured, InsufficientBalance, InsufficientRewards, NothingStaked)):
        return ApiError.conflict(e.code, e.reason, e.details)
    return ApiError.bad_request(e.code, e.reason, e.details)
