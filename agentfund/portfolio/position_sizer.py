"""Half-Kelly position sizing for fused trading signals.

Sizing pipeline for one asset:
- expected_return: signal * 15% scaled by (0.5 + 0.5 * confidence)
- asset_volatility: observed volatility, or an estimate driven by risk score
- half Kelly: 0.5 * max(0, expected_return / volatility^2), capped per profile
- sigmoid confidence adjustment and exponential risk penalty

A weak signal may legitimately size to zero; there is no floor.

This module is pure computation -- no database or I/O access.
"""

from __future__ import annotations

import math

import structlog

logger = structlog.get_logger(__name__)

# Expected return of a full-strength, fully confident signal
BASE_EXPECTED_RETURN = 0.15
# Volatility floor used by the Sharpe-like ranking ratio
MIN_RANKING_VOLATILITY = 0.01


def expected_return(signal: float, confidence: float) -> float:
    """Expected return implied by a fused signal.

    Args:
        signal: Overall signal in [-1, 1].
        confidence: Signal confidence in [0, 1].

    Returns:
        Signed expected return.
    """
    return signal * BASE_EXPECTED_RETURN * (0.5 + 0.5 * confidence)


def estimate_volatility(risk_score: float) -> float:
    """Volatility estimate from a risk score (20% at risk 1/3)."""
    return 0.2 * (0.5 + 1.5 * risk_score)


def asset_volatility(volatility: float, risk_score: float) -> float:
    """Observed volatility when available, else the risk-score estimate."""
    if volatility > 0:
        return volatility
    return estimate_volatility(risk_score)


def risk_adjusted_return(
    exp_return: float,
    volatility: float,
    annual_risk_free_rate: float = 0.02,
) -> float:
    """Sharpe-like ratio of excess expected return over volatility.

    Args:
        exp_return: Expected return of the asset.
        volatility: Asset volatility (floored at 1%).
        annual_risk_free_rate: Annual risk-free rate, converted to daily.

    Returns:
        (exp_return - daily_rf) / max(volatility, 0.01).
    """
    daily_rf = annual_risk_free_rate / 365
    return (exp_return - daily_rf) / max(volatility, MIN_RANKING_VOLATILITY)


def confidence_adjustment(confidence: float) -> float:
    """Sigmoid scaling in [0.3, 1.0] centred on confidence 0.5."""
    return 0.3 + 0.7 / (1.0 + math.exp(-10.0 * (confidence - 0.5)))


def risk_penalty(risk_score: float) -> float:
    """Exponential size penalty e^(-2 * risk_score)."""
    return math.exp(-2.0 * risk_score)


class PositionSizer:
    """Half-Kelly sizing with confidence and risk adjustments.

    Args:
        max_position_size: Cap applied to the fractional Kelly size.
        kelly_fraction: Fraction of full Kelly to use (default 0.5 = half Kelly).
        annual_risk_free_rate: Hurdle below which nothing is sized.
    """

    def __init__(
        self,
        max_position_size: float = 0.10,
        kelly_fraction: float = 0.5,
        annual_risk_free_rate: float = 0.02,
    ) -> None:
        self.max_position_size = max_position_size
        self.kelly_fraction = kelly_fraction
        self.annual_risk_free_rate = annual_risk_free_rate

    def fractional_kelly_size(self, exp_return: float, volatility: float) -> float:
        """Fractional Kelly f = kelly_fraction * max(0, mu / sigma^2), capped.

        Args:
            exp_return: Expected return of the asset.
            volatility: Asset volatility.

        Returns:
            Non-negative size in [0, max_position_size].
        """
        if volatility <= 0:
            return 0.0
        full_kelly = max(0.0, exp_return / (volatility**2))
        return min(self.kelly_fraction * full_kelly, self.max_position_size)

    def size(
        self,
        signal: float,
        confidence: float,
        risk_score: float,
        volatility: float,
    ) -> float:
        """Final position size in [0, 1] for one asset.

        Args:
            signal: Overall signal in [-1, 1].
            confidence: Signal confidence in [0, 1].
            risk_score: Risk score in [0, 1].
            volatility: Volatility score in [0, 1] (0 = unknown).

        Returns:
            Position size in [0, 1]; 0 when the risk-adjusted return is not
            positive.
        """
        mu = expected_return(signal, confidence)
        sigma = asset_volatility(volatility, risk_score)
        if risk_adjusted_return(mu, sigma, self.annual_risk_free_rate) <= 0:
            return 0.0

        kelly = self.fractional_kelly_size(mu, sigma)
        size = kelly * confidence_adjustment(confidence) * risk_penalty(risk_score)
        return max(0.0, min(1.0, size))
