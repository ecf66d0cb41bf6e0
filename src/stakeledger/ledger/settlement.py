# src/stakeledger/ledger/settlement.py
from __future__ import annotations

"""Settlement gateway interface.

Token movement is an external concern. The ledger calls transfer() exactly once
per stake/redeem/claim and commits its own state only when it returns True.

InMemoryTokenGateway is a reference implementation for local runs and tests:
plain integer balances, no fees, no allowances beyond an optional cap.
"""

import threading
from typing import Any, Dict, Optional, Protocol


class SettlementGateway(Protocol):
    def transfer(self, source: str, destination: str, amount: int) -> bool: ...


def _parse_amounts(raw: Any, *, field: str) -> Dict[str, int]:
    if not isinstance(raw, dict):
        raise ValueError(f"gateway state: '{field}' must be a dict")
    out: Dict[str, int] = {}
    for k, v in raw.items():
        if not isinstance(k, str) or not k.strip():
            raise ValueError(f"gateway state: '{field}' keys must be non-empty strings")
        if isinstance(v, bool) or not isinstance(v, int) or v < 0:
            raise ValueError(f"gateway state: {field}['{k}'] must be a non-negative int")
        out[k] = int(v)
    return out


class InMemoryTokenGateway:
    def __init__(self, balances: Optional[Dict[str, int]] = None) -> None:
        self._lock = threading.Lock()
        self._balances: Dict[str, int] = {str(k): int(v) for k, v in (balances or {}).items()}
        self._allowances: Dict[str, int] = {}
        self._fail_next = 0
        self.transfers: list[tuple[str, str, int]] = []

    def mint(self, account: str, amount: int) -> None:
        with self._lock:
            self._balances[str(account)] = self._balances.get(str(account), 0) + int(amount)

    def approve(self, owner: str, amount: int) -> None:
        """Cap how much the ledger may pull from `owner` in total."""
        with self._lock:
            self._allowances[str(owner)] = int(amount)

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` transfers report failure (failure injection)."""
        with self._lock:
            self._fail_next = int(count)

    def balance_of(self, account: str) -> int:
        with self._lock:
            return int(self._balances.get(str(account), 0))

    def transfer(self, source: str, destination: str, amount: int) -> bool:
        src = str(source)
        dst = str(destination)
        amt = int(amount)
        with self._lock:
            if self._fail_next > 0:
                self._fail_next -= 1
                return False
            if amt < 0:
                return False
            if self._balances.get(src, 0) < amt:
                return False
            if src in self._allowances:
                if self._allowances[src] < amt:
                    return False
                self._allowances[src] -= amt
            self._balances[src] = self._balances.get(src, 0) - amt
            self._balances[dst] = self._balances.get(dst, 0) + amt
            self.transfers.append((src, dst, amt))
            return True

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "balances": dict(sorted(self._balances.items())),
                "allowances": dict(sorted(self._allowances.items())),
            }

    @classmethod
    def from_dict(cls, data: Any) -> "InMemoryTokenGateway":
        """Rebuild a gateway from to_dict() output; rejects malformed state with ValueError."""
        if not isinstance(data, dict):
            raise ValueError("gateway state must be a dict")
        gw = cls(_parse_amounts(data.get("balances", {}), field="balances"))
        gw._allowances = _parse_amounts(data.get("allowances", {}), field="allowances")
        return gw


__all__ = ["SettlementGateway", "InMemoryTokenGateway"]
