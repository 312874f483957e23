"""
Commission Rule Models - Typed rule sets for the commission calculator.

Rule layers are stored as JSONB and validated into these models. Layers are
merged key by key (later layers win) before validation, so a layer only needs
to carry the keys it overrides.
"""

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CalculationMethod(str, Enum):
    """How the base commission is computed."""

    PERCENTAGE = "percentage"
    TIERED = "tiered"
    FLAT = "flat"
    PROGRESSIVE = "progressive"


class RuleScope(str, Enum):
    """Rule layer scope, in merge order."""

    GLOBAL = "global"
    AFFILIATE = "affiliate"
    GROUP = "group"


class CommissionTier(BaseModel):
    """A marginal band [min_amount, max_amount) paid at ``rate``."""

    model_config = ConfigDict(frozen=True)

    min_amount: Decimal = Field(..., ge=0)
    max_amount: Decimal | None = Field(None, gt=0)
    rate: Decimal = Field(..., ge=0, le=1)

    @model_validator(mode="after")
    def validate_band(self) -> "CommissionTier":
        if self.max_amount is not None and self.max_amount <= self.min_amount:
            raise ValueError("max_amount must be greater than min_amount")
        return self


class VolumeBonusTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_volume: Decimal = Field(..., ge=0)
    bonus_rate: Decimal = Field(..., ge=0)


class ThresholdBonus(BaseModel):
    model_config = ConfigDict(frozen=True)

    threshold: Decimal = Field(..., ge=0)
    bonus_rate: Decimal = Field(..., ge=0)


class BonusRules(BaseModel):
    """Performance bonus sub-rules. Sub-bonuses add to a 1.0 multiplier."""

    model_config = ConfigDict(frozen=True)

    volume_tiers: list[VolumeBonusTier] = Field(default_factory=list)
    conversion_rate: ThresholdBonus | None = ThresholdBonus(
        threshold=Decimal("0.05"), bonus_rate=Decimal("0.10")
    )
    consistency: ThresholdBonus | None = ThresholdBonus(
        threshold=Decimal("0.8"), bonus_rate=Decimal("0.05")
    )
    max_multiplier: Decimal = Field(Decimal("2.0"), ge=1)


class HourlyRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_hour: int = Field(..., ge=0, le=23)
    end_hour: int = Field(..., ge=0, le=23)
    multiplier: Decimal = Field(..., gt=0)


class NewAffiliateBoost(BaseModel):
    model_config = ConfigDict(frozen=True)

    period_days: int = Field(30, gt=0)
    multiplier: Decimal = Field(Decimal("1.2"), gt=0)


class TimeRules(BaseModel):
    """Time-based adjustment rules. Factors multiply, then clamp to the band."""

    model_config = ConfigDict(frozen=True)

    seasonal: dict[int, Decimal] = Field(default_factory=dict)  # month 1-12
    hourly: list[HourlyRule] = Field(default_factory=list)
    daily: dict[int, Decimal] = Field(default_factory=dict)  # ISO weekday 1-7
    new_affiliate_boost: NewAffiliateBoost | None = None
    min_multiplier: Decimal = Field(Decimal("0.5"), gt=0)
    max_multiplier: Decimal = Field(Decimal("2.0"), gt=0)

    @model_validator(mode="after")
    def validate_keys(self) -> "TimeRules":
        if any(month < 1 or month > 12 for month in self.seasonal):
            raise ValueError("seasonal keys must be months 1-12")
        if any(day < 1 or day > 7 for day in self.daily):
            raise ValueError("daily keys must be ISO weekdays 1-7")
        if self.min_multiplier > self.max_multiplier:
            raise ValueError("min_multiplier must not exceed max_multiplier")
        return self


class CommissionRules(BaseModel):
    """Fully merged rule set used for one calculation."""

    model_config = ConfigDict(frozen=True)

    calculation_method: CalculationMethod = CalculationMethod.PERCENTAGE
    base_rate: Decimal = Field(Decimal("0.10"), ge=0, le=1)
    max_rate: Decimal = Field(Decimal("0.25"), ge=0, le=1)
    min_threshold: Decimal = Field(Decimal("100.00"), ge=0)
    max_commission: Decimal | None = Field(None, gt=0)
    flat_amount: Decimal = Field(Decimal("0"), ge=0)
    tiers: list[CommissionTier] = Field(default_factory=list)
    progression_factor: Decimal = Field(Decimal("0.01"), ge=0)
    progression_cap: Decimal | None = Field(None, ge=0, le=1)
    currency: str = Field("USD", min_length=3, max_length=3)
    bonuses: BonusRules = Field(default_factory=BonusRules)
    time_adjustments: TimeRules = Field(default_factory=TimeRules)

    @model_validator(mode="after")
    def validate_method_inputs(self) -> "CommissionRules":
        if self.calculation_method is CalculationMethod.TIERED and not self.tiers:
            raise ValueError("tiered calculation requires at least one tier")
        return self


def merge_rule_layers(*layers: dict[str, Any]) -> CommissionRules:
    """Merge raw rule layers in order (later wins) and validate the result."""
    merged: dict[str, Any] = {}
    for layer in layers:
        merged.update(layer)
    return CommissionRules.model_validate(merged)
