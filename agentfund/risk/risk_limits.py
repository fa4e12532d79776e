"""Pre-trade risk limit checks on proposed target weights.

RiskLimitChecker is the default risk service consulted by the round state
machine before any order is placed. Per-profile limits:

| profile | max position | min cash buffer | max leverage |
|---------|--------------|-----------------|--------------|
| averse  | 0.15         | 0.05            | 1.0          |
| neutral | 0.20         | 0.02            | 1.0          |
| bold    | 0.25         | 0.00            | 1.0          |

Critical violations (block execution): a single weight above the max
position, gross weight above max leverage, a target with no market stats.
Warnings: cash buffer shortfall, a weight above 80% of the max position, more
resulting positions than the profile allows.

All checks are pure computation -- no I/O or database access.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Sequence

import structlog

from agentfund.core.enums import RiskProfileName, Side, Severity
from agentfund.core.risk_profiles import RiskProfile, get_risk_profile
from agentfund.core.schemas import MarketStats, Position, RiskCheckResult, RiskViolation
from agentfund.portfolio.portfolio_constructor import TargetWeight

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RiskLimits:
    """Limits for one risk profile.

    Attributes:
        max_position: Max single target weight.
        min_cash_buffer: Minimum uninvested fraction after the rebalance.
        max_leverage: Max sum of target weights.
        warning_utilization: Fraction of a limit at which a warning fires.
    """

    max_position: float
    min_cash_buffer: float
    max_leverage: float = 1.0
    warning_utilization: float = 0.80


RISK_LIMITS: Mapping[RiskProfileName, RiskLimits] = MappingProxyType(
    {
        RiskProfileName.AVERSE: RiskLimits(max_position=0.15, min_cash_buffer=0.05),
        RiskProfileName.NEUTRAL: RiskLimits(max_position=0.20, min_cash_buffer=0.02),
        RiskProfileName.BOLD: RiskLimits(max_position=0.25, min_cash_buffer=0.0),
    }
)


class RiskLimitChecker:
    """Checks proposed target weights against per-profile limits.

    Args:
        limits: Optional override of the per-profile limits table.
    """

    def __init__(
        self, limits: Mapping[RiskProfileName, RiskLimits] | None = None
    ) -> None:
        self.limits = limits if limits is not None else RISK_LIMITS

    async def check_limits(
        self,
        target_weights: Sequence[TargetWeight],
        current_positions: Sequence[Position],
        market_stats: Mapping[str, MarketStats],
        risk_profile: RiskProfile | str,
    ) -> RiskCheckResult:
        """Check target weights; ``ok`` is False iff any violation is critical.

        Args:
            target_weights: Proposed targets for the round.
            current_positions: Positions currently held.
            market_stats: Symbol -> market stats for the round.
            risk_profile: Active risk profile.

        Returns:
            RiskCheckResult with all violations found.
        """
        profile = get_risk_profile(risk_profile)
        limits = self.limits[profile.name]
        violations: list[RiskViolation] = []

        # 1. Single position
        warn_at = limits.max_position * limits.warning_utilization
        for tw in target_weights:
            if tw.weight > limits.max_position:
                violations.append(
                    RiskViolation(
                        kind="max_position",
                        current=tw.weight,
                        limit=limits.max_position,
                        severity=Severity.CRITICAL,
                        detail=f"{tw.symbol} weight {tw.weight:.4f} exceeds limit",
                        ticker=tw.symbol,
                    )
                )
            elif tw.weight > warn_at:
                violations.append(
                    RiskViolation(
                        kind="max_position",
                        current=tw.weight,
                        limit=limits.max_position,
                        severity=Severity.WARNING,
                        detail=(
                            f"{tw.symbol} weight {tw.weight:.4f} above "
                            f"{limits.warning_utilization:.0%} of limit"
                        ),
                        ticker=tw.symbol,
                    )
                )

        # 2. Market data coverage
        for tw in target_weights:
            if tw.symbol not in market_stats:
                violations.append(
                    RiskViolation(
                        kind="missing_market_data",
                        severity=Severity.CRITICAL,
                        detail=f"No market stats for {tw.symbol}",
                        ticker=tw.symbol,
                    )
                )

        # 3. Leverage and cash buffer
        gross = sum(abs(tw.weight) for tw in target_weights)
        if gross > limits.max_leverage:
            violations.append(
                RiskViolation(
                    kind="max_leverage",
                    current=gross,
                    limit=limits.max_leverage,
                    severity=Severity.CRITICAL,
                    detail=f"Gross weight {gross:.4f} exceeds leverage limit",
                )
            )
        cash = 1.0 - gross
        if cash < limits.min_cash_buffer:
            violations.append(
                RiskViolation(
                    kind="min_cash_buffer",
                    current=cash,
                    limit=limits.min_cash_buffer,
                    severity=Severity.WARNING,
                    detail=f"Cash buffer {cash:.4f} below minimum",
                )
            )

        # 4. Position count after rebalance
        exits = {tw.symbol for tw in target_weights if tw.side == Side.SELL}
        resulting = {p.symbol for p in current_positions if p.quantity != 0} - exits
        resulting |= {
            tw.symbol for tw in target_weights if tw.side == Side.BUY and tw.weight > 0
        }
        if len(resulting) > profile.max_positions:
            violations.append(
                RiskViolation(
                    kind="max_positions",
                    current=float(len(resulting)),
                    limit=float(profile.max_positions),
                    severity=Severity.WARNING,
                    detail="More positions than the risk profile allows",
                )
            )

        ok = not any(v.severity == Severity.CRITICAL for v in violations)
        log.info(
            "risk_limits_checked",
            risk_profile=profile.name.value,
            ok=ok,
            gross_weight=round(gross, 6),
            n_violations=len(violations),
        )
        return RiskCheckResult(ok=ok, violations=violations)
