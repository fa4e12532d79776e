"""Portfolio construction: qualify -> risk-adjust -> correlation -> constrain.

PortfolioConstructor converts fused signals into target weights via a
multi-stage pipeline:
1. Qualify: keep non-HOLD signals with confidence >= 0.5, top max_positions.
2. Rank by a Sharpe-like ratio (expected return over daily risk-free rate,
   divided by volatility).
3. Penalize members of the correlated asset group by 0.8^k, where k is the
   number of higher-ranked group members already selected.
4. Normalize position_size * penalty to sum to 1, then clip each weight to the
   profile's max weight per position. Clipped mass is not redistributed; the
   remainder stays uninvested.

This module is pure computation -- no database or I/O access.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import structlog

from agentfund.core import config
from agentfund.core.enums import Recommendation, Side
from agentfund.core.risk_profiles import RiskProfile, get_risk_profile
from agentfund.portfolio.position_sizer import (
    asset_volatility,
    expected_return,
    risk_adjusted_return,
)
from agentfund.portfolio.signal_processor import SignalAnalysis

log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MIN_QUALIFYING_CONFIDENCE = 0.5
CORRELATION_PENALTY = 0.8

DEFAULT_CORRELATED_ASSETS: frozenset[str] = frozenset(config.DEFAULT_CORRELATED_ASSETS)

SIDE_BY_RECOMMENDATION: dict[Recommendation, Side] = {
    Recommendation.BUY: Side.BUY,
    Recommendation.SELL: Side.SELL,
    Recommendation.HOLD: Side.HOLD,
}


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TargetWeight:
    """Target allocation for one symbol.

    Attributes:
        symbol: Asset symbol.
        weight: Fraction of capital in [0, max_weight_per_position].
        side: buy / sell / hold, from the signal's recommendation.
    """

    symbol: str
    weight: float
    side: Side


@dataclass(frozen=True)
class _RankedSignal:
    signal: SignalAnalysis
    risk_adjusted_return: float
    correlation_penalty: float = 1.0


# ---------------------------------------------------------------------------
# PortfolioConstructor
# ---------------------------------------------------------------------------
class PortfolioConstructor:
    """Turns ranked signals into bounded target weights.

    Args:
        correlated_assets: Symbols treated as one highly-correlated group.
        annual_risk_free_rate: Annual hurdle rate for the ranking ratio.
    """

    def __init__(
        self,
        correlated_assets: Optional[Iterable[str]] = None,
        annual_risk_free_rate: float = 0.02,
    ) -> None:
        self.correlated_assets = (
            frozenset(a.upper() for a in correlated_assets)
            if correlated_assets is not None
            else DEFAULT_CORRELATED_ASSETS
        )
        self.annual_risk_free_rate = annual_risk_free_rate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def build_target_weights(
        self,
        signals: Sequence[SignalAnalysis],
        risk_profile: RiskProfile | str,
    ) -> list[TargetWeight]:
        """Construct target weights from the round's signals.

        Args:
            signals: Signal analyses for the round.
            risk_profile: Risk profile (or its key) supplying position count
                and weight caps.

        Returns:
            One TargetWeight per retained symbol, in risk-adjusted rank order.
        """
        profile = get_risk_profile(risk_profile)

        # Step 1: qualify
        qualifying = [
            s
            for s in signals
            if s.recommendation != Recommendation.HOLD
            and s.confidence >= MIN_QUALIFYING_CONFIDENCE
        ][: profile.max_positions]
        if not qualifying:
            log.info("portfolio_constructed", n_positions=0, reason="no_qualifying_signals")
            return []

        # Step 2: rank by risk-adjusted return
        ranked = sorted(
            (self._rank(s) for s in qualifying),
            key=lambda r: r.risk_adjusted_return,
            reverse=True,
        )

        # Step 3: correlation penalty, then truncate
        ranked = self._apply_correlation_penalty(ranked)[: profile.max_positions]

        # Step 4: normalize and clip
        weights = self._normalize_and_clip(ranked, profile.max_weight_per_position)

        targets = [
            TargetWeight(
                symbol=r.signal.ticker,
                weight=float(w),
                side=SIDE_BY_RECOMMENDATION[r.signal.recommendation],
            )
            for r, w in zip(ranked, weights)
        ]

        log.info(
            "portfolio_constructed",
            risk_profile=profile.name.value,
            n_positions=len(targets),
            gross_weight=round(float(np.sum(weights)), 6),
            max_weight=profile.max_weight_per_position,
        )
        return targets

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _rank(self, signal: SignalAnalysis) -> _RankedSignal:
        mu = expected_return(signal.overall_signal, signal.confidence)
        sigma = asset_volatility(signal.volatility, signal.risk_score)
        return _RankedSignal(
            signal=signal,
            risk_adjusted_return=risk_adjusted_return(
                mu, sigma, self.annual_risk_free_rate
            ),
        )

    def _apply_correlation_penalty(
        self, ranked: list[_RankedSignal]
    ) -> list[_RankedSignal]:
        """Multiply each correlated member by 0.8^k (k = members ranked above)."""
        penalized: list[_RankedSignal] = []
        seen = 0
        for r in ranked:
            if r.signal.ticker.upper() in self.correlated_assets:
                penalty = CORRELATION_PENALTY**seen
                seen += 1
            else:
                penalty = 1.0
            penalized.append(
                _RankedSignal(
                    signal=r.signal,
                    risk_adjusted_return=r.risk_adjusted_return,
                    correlation_penalty=penalty,
                )
            )
        return penalized

    @staticmethod
    def _normalize_and_clip(
        ranked: list[_RankedSignal], max_weight: float
    ) -> np.ndarray:
        raw = np.array(
            [r.signal.position_size * r.correlation_penalty for r in ranked],
            dtype=float,
        )
        total = raw.sum()
        if total <= 0:
            return np.zeros(len(ranked))
        return np.clip(raw / total, 0.0, max_weight)
