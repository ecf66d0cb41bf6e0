# src/stakeledger/ledger/asset_config.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping

from stakeledger.ledger.errors import InvalidConfig

Json = Dict[str, Any]


@dataclass
class AssetConfig:
    """Emission parameters and staked total for the reward-bearing asset."""

    underlying_asset: str
    emission_per_second: int = 0
    total_staked: int = 0

    def to_dict(self) -> Json:
        return {
            "underlying_asset": str(self.underlying_asset),
            "emission_per_second": int(self.emission_per_second),
            "total_staked": int(self.total_staked),
        }


@dataclass(frozen=True)
class AssetConfigInput:
    emission_per_second: int
    total_staked: int
    underlying_asset: str


def _pick(entry: Mapping[str, Any], *keys: str) -> Any:
    # Accept both snake_case and camelCase field names.
    for k in keys:
        if k in entry:
            return entry[k]
    return None


def _strict_int(v: Any, *, field: str, index: int) -> int:
    if isinstance(v, bool) or v is None:
        raise InvalidConfig(reason="field_not_int", details={"field": field, "index": index})
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise InvalidConfig(reason="field_not_int", details={"field": field, "index": index}) from e


def parse_asset_config_entries(entries: Iterable[Any]) -> List[AssetConfigInput]:
    """Normalize configure_assets() input.

    Entries may be AssetConfigInput instances or mappings. The whole list is
    parsed before anything is applied so one bad entry rejects the batch.
    """
    if entries is None or isinstance(entries, (str, bytes, Mapping)):
        raise InvalidConfig(reason="entries_must_be_list")

    out: List[AssetConfigInput] = []
    for i, raw in enumerate(entries):
        if isinstance(raw, AssetConfigInput):
            item = raw
        elif isinstance(raw, Mapping):
            asset = _pick(raw, "underlying_asset", "underlyingAsset")
            item = AssetConfigInput(
                emission_per_second=_strict_int(
                    _pick(raw, "emission_per_second", "emissionPerSecond"), field="emission_per_second", index=i
                ),
                total_staked=_strict_int(_pick(raw, "total_staked", "totalStaked"), field="total_staked", index=i),
                underlying_asset=str(asset or "").strip(),
            )
        else:
            raise InvalidConfig(reason="entry_not_object", details={"index": i, "type": type(raw).__name__})

        if not item.underlying_asset:
            raise InvalidConfig(reason="missing_underlying_asset", details={"index": i})
        if int(item.emission_per_second) < 0:
            raise InvalidConfig(
                reason="negative_emission",
                details={"index": i, "emission_per_second": int(item.emission_per_second)},
            )
        if int(item.total_staked) < 0:
            raise InvalidConfig(reason="negative_total_staked", details={"index": i})
        out.append(item)

    if not out:
        raise InvalidConfig(reason="entries_empty")

    seen: set[str] = set()
    for item in out:
        if item.underlying_asset in seen:
            raise InvalidConfig(reason="duplicate_asset", details={"underlying_asset": item.underlying_asset})
        seen.add(item.underlying_asset)

    return out


__all__ = ["AssetConfig", "AssetConfigInput", "parse_asset_config_entries"]
