"""
Commission Calculator.

NO FLOATS - All money is Decimal, quantized to 0.01 with ROUND_HALF_UP.

Order of operations is fixed:
    base (by method) -> max_commission clamp -> performance bonus
    -> time multiplier -> quantize -> currency conversion

The pure functions at module level carry the arithmetic; CommissionService
adds rule lookup, performance aggregates and the audit log.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, assert_never

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import CommissionLog
from app.db.repositories import CommissionRepository
from app.exceptions import BelowThresholdError, NotFoundError, ValidationError
from app.models.commission import (
    BonusRules,
    CalculationMethod,
    CommissionRules,
    CommissionTier,
    RuleScope,
    TimeRules,
    merge_rule_layers,
)
from app.models.domain import (
    AffiliateProfile,
    CommissionBreakdown,
    CommissionResult,
    PerformanceMetrics,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.affiliates import AffiliateDirectory
from app.services.vanity_codes import is_well_formed

logger = get_logger(__name__)

CENT = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")
GLOBAL_SCOPE_KEY = "*"


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionOptions:
    currency: str | None = None
    apply_bonuses: bool = True
    apply_time_adjustments: bool = True
    include_breakdown: bool = False
    validate_thresholds: bool = True
    now: datetime | None = None


# ============================================================================
# Pure calculation
# ============================================================================


def tiered_commission(amount: Decimal, tiers: list[CommissionTier]) -> Decimal:
    """Marginal bands: each band pays its rate on the part of ``amount`` inside it."""
    total = Decimal("0")
    for tier in sorted(tiers, key=lambda t: t.min_amount):
        if amount <= tier.min_amount:
            break
        upper = amount if tier.max_amount is None else min(amount, tier.max_amount)
        total += (upper - tier.min_amount) * tier.rate
    return total


def progressive_rate(amount: Decimal, rules: CommissionRules) -> Decimal:
    cap = rules.progression_cap if rules.progression_cap is not None else rules.max_rate
    increment = (amount / Decimal("1000")) * rules.progression_factor
    return rules.base_rate + max(Decimal("0"), min(increment, cap - rules.base_rate))


def base_commission(amount: Decimal, rules: CommissionRules) -> Decimal:
    method = rules.calculation_method
    match method:
        case CalculationMethod.PERCENTAGE:
            return amount * rules.base_rate
        case CalculationMethod.TIERED:
            return tiered_commission(amount, rules.tiers)
        case CalculationMethod.FLAT:
            return rules.flat_amount
        case CalculationMethod.PROGRESSIVE:
            return amount * progressive_rate(amount, rules)
        case _:
            assert_never(method)


def bonus_multiplier(
    performance: PerformanceMetrics, bonuses: BonusRules
) -> tuple[Decimal, list[str]]:
    """Sub-bonuses add onto 1.0; the total is capped at max_multiplier."""
    multiplier = Decimal("1")
    applied: list[str] = []

    for tier in bonuses.volume_tiers:
        if performance.monthly_volume >= tier.min_volume:
            multiplier += tier.bonus_rate
            applied.append(f"volume_bonus_{tier.min_volume}")

    if (
        bonuses.conversion_rate is not None
        and performance.conversion_rate >= bonuses.conversion_rate.threshold
    ):
        multiplier += bonuses.conversion_rate.bonus_rate
        applied.append("conversion_bonus")

    if (
        bonuses.consistency is not None
        and performance.consistency_score >= bonuses.consistency.threshold
    ):
        multiplier += bonuses.consistency.bonus_rate
        applied.append("consistency_bonus")

    return min(multiplier, bonuses.max_multiplier), applied


def time_multiplier(
    rules: TimeRules, now: datetime, affiliate_created_at: datetime | None = None
) -> tuple[Decimal, list[str]]:
    """Seasonal x hourly x daily x new-affiliate, clamped to [min, max]."""
    factor = Decimal("1")
    applied: list[str] = []

    seasonal = rules.seasonal.get(now.month)
    if seasonal is not None:
        factor *= seasonal
        applied.append(f"seasonal_{now.month}")

    for rule in rules.hourly:
        if rule.start_hour <= now.hour <= rule.end_hour:
            factor *= rule.multiplier
            applied.append(f"hourly_{rule.start_hour}_{rule.end_hour}")
            break

    daily = rules.daily.get(now.isoweekday())
    if daily is not None:
        factor *= daily
        applied.append(f"daily_{now.isoweekday()}")

    boost = rules.new_affiliate_boost
    if (
        boost is not None
        and affiliate_created_at is not None
        and now - affiliate_created_at <= timedelta(days=boost.period_days)
    ):
        factor *= boost.multiplier
        applied.append("new_affiliate_boost")

    return max(rules.min_multiplier, min(factor, rules.max_multiplier)), applied


def compose(base: Decimal, bonus: Decimal, time_factor: Decimal) -> Decimal:
    """base x bonus x time, quantized once at the end."""
    return quantize_money(base * bonus * time_factor)


def convert_currency(
    amount: Decimal, from_currency: str, to_currency: str, rates: dict[str, Decimal]
) -> Decimal:
    if from_currency == to_currency:
        return amount
    rate = rates.get(f"{from_currency}_{to_currency}")
    if rate is None:
        raise ValidationError(
            f"No conversion rate for {from_currency} to {to_currency}", field="currency"
        )
    return quantize_money(amount * rate)


def calculate_commission(
    sale_amount: Decimal,
    rules: CommissionRules,
    performance: PerformanceMetrics,
    options: CommissionOptions,
    now: datetime,
    affiliate_created_at: datetime | None = None,
) -> tuple[Decimal, Decimal, CommissionBreakdown]:
    """
    Run the calculation pipeline on already-resolved inputs.

    Returns:
        (commission in target currency, commission in rule currency, breakdown)

    Raises:
        ValidationError: non-positive amount or unknown currency pair
        BelowThresholdError: sale below min_threshold (when validating thresholds)
    """
    if sale_amount <= 0:
        raise ValidationError("Sale amount must be positive", field="sale_amount")
    if options.validate_thresholds and sale_amount < rules.min_threshold:
        raise BelowThresholdError(sale_amount, rules.min_threshold)

    rules_applied = [f"method_{rules.calculation_method.value}"]
    base = base_commission(sale_amount, rules)
    if rules.max_commission is not None and base > rules.max_commission:
        base = rules.max_commission
        rules_applied.append("max_commission_cap")

    bonus = Decimal("1")
    if options.apply_bonuses:
        bonus, applied = bonus_multiplier(performance, rules.bonuses)
        rules_applied.extend(applied)

    time_factor = Decimal("1")
    if options.apply_time_adjustments:
        time_factor, applied = time_multiplier(rules.time_adjustments, now, affiliate_created_at)
        rules_applied.extend(applied)

    amount = compose(base, bonus, time_factor)
    target_currency = options.currency or rules.currency
    converted = convert_currency(amount, rules.currency, target_currency, settings.currency_rates)
    if target_currency != rules.currency:
        rules_applied.append(f"currency_{rules.currency}_{target_currency}")

    breakdown = CommissionBreakdown(
        base_commission=quantize_money(base),
        bonus_multiplier=bonus,
        performance_bonus=quantize_money(base * (bonus - 1)),
        time_multiplier=time_factor,
        time_adjustment=quantize_money(base * bonus * (time_factor - 1)),
        rules_applied=tuple(rules_applied),
        calculation_method=rules.calculation_method.value,
    )
    return converted, amount, breakdown


def performance_from_aggregates(
    volume: Decimal | None,
    transactions: int,
    avg_rate: Decimal | None,
    stddev_rate: Decimal | None,
) -> PerformanceMetrics:
    """consistency = max(0, 1 - stddev/avg); undefined below two transactions."""
    avg = Decimal(avg_rate) if avg_rate is not None else Decimal("0")
    consistency = Decimal("0")
    if transactions >= 2 and avg > 0 and stddev_rate is not None:
        consistency = max(Decimal("0"), Decimal("1") - Decimal(stddev_rate) / avg)
    return PerformanceMetrics(
        monthly_volume=Decimal(volume) if volume is not None else Decimal("0"),
        transactions=transactions,
        conversion_rate=avg,
        consistency_score=consistency,
    )


# ============================================================================
# Service
# ============================================================================


class CommissionService:
    """Resolves affiliates and rule layers, calculates, and writes the audit log."""

    def __init__(self, db: AsyncSession, directory: AffiliateDirectory):
        self.db = db
        self.directory = directory
        self.repo = CommissionRepository(db)

    async def _stored_layers(self, scopes: list[tuple[RuleScope, str]]) -> list[dict[str, Any]]:
        layers: list[dict[str, Any]] = []
        for scope, key in scopes:
            rule = await self.repo.get_rule(scope.value, key)
            if rule is not None:
                layers.append(rule.rules)
        return layers

    async def rules_for(self, profile: AffiliateProfile) -> CommissionRules:
        """
        Merge defaults <- global <- affiliate <- group.

        Raises:
            ValidationError: stored layers that are valid alone but conflict
                once merged (e.g. a tiered method without tiers)
        """
        scopes = [
            (RuleScope.GLOBAL, GLOBAL_SCOPE_KEY),
            (RuleScope.AFFILIATE, str(profile.affiliate_id)),
        ]
        if profile.group:
            scopes.append((RuleScope.GROUP, profile.group))
        layers = await self._stored_layers(scopes)
        try:
            return merge_rule_layers(*layers)
        except ValueError as e:
            logger.warning(
                "commission_rule_layers_conflict",
                affiliate_id=profile.affiliate_id,
                group=profile.group,
                error=str(e),
            )
            raise ValidationError(
                f"Commission rules for affiliate {profile.affiliate_id} conflict: {e}",
                field="rules",
            ) from e

    async def performance(self, affiliate_id: int, now: datetime) -> PerformanceMetrics:
        since = now - timedelta(days=settings.performance_window_days)
        aggregates = await self.repo.performance_aggregates(affiliate_id, since)
        return performance_from_aggregates(*aggregates)

    async def calculate(
        self,
        sale_amount: Decimal,
        affiliate_code: str,
        options: CommissionOptions | None = None,
        commit: bool = True,
    ) -> CommissionResult:
        """
        Calculate a commission for ``affiliate_code`` and log it.

        Raises:
            ValidationError / BelowThresholdError: invalid input
            NotFoundError: unknown affiliate
        """
        options = options or CommissionOptions()
        now = options.now or datetime.now(UTC)

        if sale_amount <= 0:
            raise ValidationError("Sale amount must be positive", field="sale_amount")
        if not is_well_formed(affiliate_code):
            raise ValidationError("Invalid affiliate code format", field="affiliate_code")

        with trace_operation("commission_calculation", affiliate_code=affiliate_code) as span:
            profile = await self.directory.find_by_code(affiliate_code)
            if profile is None:
                raise NotFoundError("Affiliate", affiliate_code)

            rules = await self.rules_for(profile)
            performance = await self.performance(profile.affiliate_id, now)

            try:
                commission, rule_amount, breakdown = calculate_commission(
                    sale_amount, rules, performance, options, now, profile.created_at
                )
            except ValidationError:
                metrics.record_commission(rules.calculation_method.value, False)
                raise

            effective_rate = (rule_amount / sale_amount).quantize(RATE_PLACES, ROUND_HALF_UP)
            span.set_attribute("commission.method", rules.calculation_method.value)

        target_currency = options.currency or rules.currency
        await self.repo.add_log(
            CommissionLog(
                affiliate_id=profile.affiliate_id,
                affiliate_code=profile.affiliate_code,
                sale_amount=sale_amount,
                commission_amount=commission,
                effective_rate=effective_rate,
                currency=target_currency,
                calculation_method=rules.calculation_method.value,
                bonus_multiplier=breakdown.bonus_multiplier,
                time_multiplier=breakdown.time_multiplier,
                breakdown=_breakdown_json(breakdown),
                created_at=now,
            )
        )
        if commit:
            await self.db.commit()

        metrics.record_commission(rules.calculation_method.value, True, float(commission))
        logger.info(
            "commission_calculated",
            affiliate_id=profile.affiliate_id,
            affiliate_code=profile.affiliate_code,
            sale_amount=str(sale_amount),
            commission_amount=str(commission),
            currency=target_currency,
            method=rules.calculation_method.value,
            rules_applied=list(breakdown.rules_applied),
        )

        return CommissionResult(
            commission_amount=commission,
            currency=target_currency,
            affiliate_code=profile.affiliate_code,
            sale_amount=sale_amount,
            effective_rate=effective_rate,
            calculated_at=now,
            breakdown=breakdown,
        )

    async def set_rules(self, scope: RuleScope, scope_key: str, rules: dict[str, Any]) -> CommissionRules:
        """
        Validate a rule layer and upsert it.

        The layer must validate on its own and stacked over the stored global
        layer; affiliate + group combinations are checked again by rules_for().
        """
        try:
            validated = merge_rule_layers(rules)
            if scope is not RuleScope.GLOBAL:
                global_layers = await self._stored_layers([(RuleScope.GLOBAL, GLOBAL_SCOPE_KEY)])
                merge_rule_layers(*global_layers, rules)
        except ValueError as e:
            raise ValidationError(str(e), field="rules") from e
        await self.repo.upsert_rule(scope.value, scope_key, rules)
        await self.db.commit()
        logger.info("commission_rules_updated", scope=scope.value, scope_key=scope_key)
        return validated

    async def get_rules(self, scope: RuleScope, scope_key: str) -> dict[str, Any] | None:
        rule = await self.repo.get_rule(scope.value, scope_key)
        return dict(rule.rules) if rule is not None else None


def _breakdown_json(breakdown: CommissionBreakdown) -> dict[str, Any]:
    return {
        "base_commission": str(breakdown.base_commission),
        "bonus_multiplier": str(breakdown.bonus_multiplier),
        "performance_bonus": str(breakdown.performance_bonus),
        "time_multiplier": str(breakdown.time_multiplier),
        "time_adjustment": str(breakdown.time_adjustment),
        "rules_applied": list(breakdown.rules_applied),
        "calculation_method": breakdown.calculation_method,
    }
