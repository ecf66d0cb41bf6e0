from __future__ import annotations

"""Pydantic request schemas for the HTTP API.

These exist only for HTTP input validation; the ledger validates again.
`now` is optional everywhere: when omitted the service clock supplies it.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class StakeRequest(BaseModel):
    sender: str = Field(..., min_length=1, description="Account paying the staked tokens")
    target: str = Field(..., min_length=1, description="Account credited with the stake")
    amount: int = Field(..., description="Units to stake (> 0)")
    now: Optional[int] = Field(default=None, ge=0, description="Unix seconds; defaults to the service clock")


class CooldownRequest(BaseModel):
    sender: str = Field(..., min_length=1)
    now: Optional[int] = Field(default=None, ge=0)


class RedeemRequest(BaseModel):
    sender: str = Field(..., min_length=1, description="Account whose stake is redeemed")
    target: str = Field(..., min_length=1, description="Account receiving the tokens")
    amount: int
    now: Optional[int] = Field(default=None, ge=0)


class ClaimRequest(BaseModel):
    sender: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    amount: Optional[int] = Field(default=None, description="Omit to claim everything accrued")
    now: Optional[int] = Field(default=None, ge=0)


class TransferStakeRequest(BaseModel):
    sender: str = Field(..., min_length=1)
    recipient: str = Field(..., min_length=1)
    amount: int
    now: Optional[int] = Field(default=None, ge=0)


class AssetConfigEntry(BaseModel):
    emission_per_second: int = Field(..., alias="emissionPerSecond")
    total_staked: int = Field(..., alias="totalStaked")
    underlying_asset: str = Field(..., alias="underlyingAsset")

    model_config = {"populate_by_name": True}


class ConfigureAssetsRequest(BaseModel):
    assets: List[AssetConfigEntry]
    now: Optional[int] = Field(default=None, ge=0)
