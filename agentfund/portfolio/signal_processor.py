"""Multi-dimensional signal fusion from role claims and market data.

SignalProcessor turns the verified claims of one round, together with 24h
market statistics and optional technical indicators, into one SignalAnalysis
per ticker:
1. Per-role sub-scores (fundamental / sentiment / technical). A role without a
   claim falls back to a market-data score instead of abstaining.
2. Momentum and volatility scores from price / volume changes and indicators.
3. Risk score from claim risk flags, volatility and thin volume.
4. Overall signal via the risk profile's fusion weights.
5. Confidence from claim confidence, directional agreement and data quality.
6. Recommendation, half-Kelly position size and time horizon.

Tickers absent from the market statistics are skipped; tickers with market
statistics but no claims are scored purely from market data (confidence 0, so
always HOLD).

This module is pure computation -- no database or I/O access.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np
import structlog

from agentfund.core.enums import Recommendation, Role, TimeHorizon
from agentfund.core.risk_profiles import RiskProfile, get_risk_profile
from agentfund.core.schemas import Claim, MarketStats, TechnicalIndicators
from agentfund.portfolio.position_sizer import PositionSizer

log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
PRICE_SCALING = 3.0
VOLUME_SCALING = 2.0

# 24h volume -> liquidity score, checked top-down
VOLUME_BUCKETS: tuple[tuple[float, float], ...] = (
    (5_000_000.0, 1.0),
    (1_000_000.0, 0.7),
    (100_000.0, 0.4),
)
MIN_VOLUME_SCORE = 0.1

# Multiplicative penalties for recognised sentiment risk flags
SENTIMENT_FLAG_PENALTIES: dict[str, float] = {
    "low_coverage": 0.8,
    "old_news": 0.7,
    "inconsistent_sentiment": 0.6,
    "unreliable_source": 0.5,
    "insufficient_data": 0.4,
}

# (confidence strictly above, boost), checked top-down
CREDIBILITY_BOOSTS: tuple[tuple[float, float], ...] = (
    (0.9, 1.15),
    (0.8, 1.10),
    (0.7, 1.05),
)

RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0
TECHNICAL_WEIGHTS = {"rsi": 0.4, "macd": 0.4, "volatility": 0.2}

RISK_PER_FLAG = 0.1
LOW_VOLUME_REFERENCE = 1_000_000.0

STRONG_MOMENTUM = 0.7
LONG_HORIZON_CONFIDENCE = 0.8


def _clip(value: float, lo: float = -1.0, hi: float = 1.0) -> float:
    return float(max(lo, min(hi, value)))


def _confidence(claim: Claim) -> float:
    return _clip(claim.confidence, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SignalAnalysis:
    """Fused signal for one ticker in one round.

    Attributes:
        ticker: Asset symbol.
        overall_signal: Fused directional signal in [-1, 1].
        confidence: Confidence in [0, 1].
        volatility: Volatility score in [0, 1].
        momentum: Momentum score in [-1, 1].
        fundamental: Fundamental sub-score in [-1, 1].
        sentiment: Sentiment sub-score in [-1, 1].
        technical: Technical sub-score in [-1, 1].
        risk_score: Risk score in [0, 1] (higher = riskier).
        recommendation: BUY / HOLD / SELL.
        rationale: Human-readable summary.
        time_horizon: short / medium / long.
        position_size: Recommended half-Kelly size in [0, 1].
    """

    ticker: str
    overall_signal: float
    confidence: float
    volatility: float
    momentum: float
    fundamental: float
    sentiment: float
    technical: float
    risk_score: float
    recommendation: Recommendation
    rationale: str
    time_horizon: TimeHorizon
    position_size: float


# ---------------------------------------------------------------------------
# SignalProcessor
# ---------------------------------------------------------------------------
class SignalProcessor:
    """Fuses role claims and market data into per-ticker SignalAnalysis.

    Args:
        annual_risk_free_rate: Hurdle rate used by position sizing.
    """

    def __init__(self, annual_risk_free_rate: float = 0.02) -> None:
        self.annual_risk_free_rate = annual_risk_free_rate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def process_signals(
        self,
        claims: Sequence[Claim],
        market_stats: Mapping[str, MarketStats],
        risk_profile: RiskProfile | str,
        technical_data: Optional[Mapping[str, TechnicalIndicators]] = None,
    ) -> list[SignalAnalysis]:
        """Compute one SignalAnalysis per ticker, sorted by overall signal.

        Args:
            claims: Verified claims for this round.
            market_stats: Symbol -> 24h market statistics.
            risk_profile: Risk profile (or its key) supplying weights and
                thresholds.
            technical_data: Optional symbol -> technical indicators.

        Returns:
            SignalAnalysis list sorted descending by overall_signal.
        """
        profile = get_risk_profile(risk_profile)
        technical_data = technical_data or {}

        by_ticker: dict[str, list[Claim]] = defaultdict(list)
        for claim in claims:
            by_ticker[claim.ticker].append(claim)

        skipped = sorted(t for t in by_ticker if t not in market_stats)
        if skipped:
            log.warning("tickers_without_market_stats", tickers=skipped)

        analyses = [
            self.analyze_ticker(
                ticker,
                by_ticker.get(ticker, []),
                stats,
                profile,
                technical_data.get(ticker),
            )
            for ticker, stats in market_stats.items()
        ]
        analyses.sort(key=lambda a: a.overall_signal, reverse=True)

        log.info(
            "signals_processed",
            risk_profile=profile.name.value,
            n_claims=len(claims),
            n_tickers=len(analyses),
            n_buy=sum(a.recommendation == Recommendation.BUY for a in analyses),
            n_sell=sum(a.recommendation == Recommendation.SELL for a in analyses),
        )
        return analyses

    def analyze_ticker(
        self,
        ticker: str,
        claims: Sequence[Claim],
        stats: MarketStats,
        risk_profile: RiskProfile | str,
        technical: Optional[TechnicalIndicators] = None,
    ) -> SignalAnalysis:
        """Fuse the claims and market data of a single ticker."""
        profile = get_risk_profile(risk_profile)
        by_role = self._first_claim_per_role(claims)

        fundamental = self.fundamental_score(by_role.get(Role.FUNDAMENTAL), stats)
        sentiment = self.sentiment_score(by_role.get(Role.SENTIMENT))
        technical_score = self.technical_score(
            by_role.get(Role.TECHNICAL), stats, technical
        )
        momentum = self.momentum_score(stats, technical)
        volatility = self.volatility_score(stats, technical)
        risk_score = self.risk_score(claims, stats)

        w = profile.weights
        overall = _clip(
            fundamental * w.fundamental
            + sentiment * w.sentiment
            + technical_score * w.technical
            + momentum * w.momentum
        )
        confidence = self.confidence_score(claims)
        recommendation = self.recommend(overall, confidence, risk_score, profile)

        sizer = PositionSizer(
            max_position_size=profile.max_position_size,
            annual_risk_free_rate=self.annual_risk_free_rate,
        )
        position_size = sizer.size(overall, confidence, risk_score, volatility)

        return SignalAnalysis(
            ticker=ticker,
            overall_signal=overall,
            confidence=confidence,
            volatility=volatility,
            momentum=momentum,
            fundamental=fundamental,
            sentiment=sentiment,
            technical=technical_score,
            risk_score=risk_score,
            recommendation=recommendation,
            rationale=self._rationale(by_role, overall, recommendation),
            time_horizon=self._time_horizon(by_role, momentum, technical),
            position_size=position_size,
        )

    # ------------------------------------------------------------------
    # Role sub-scores
    # ------------------------------------------------------------------
    @staticmethod
    def volume_score(volume_24h: float) -> float:
        """Bucket 24h volume into a liquidity score."""
        for threshold, score in VOLUME_BUCKETS:
            if volume_24h >= threshold:
                return score
        return MIN_VOLUME_SCORE

    def fundamental_score(self, claim: Optional[Claim], stats: MarketStats) -> float:
        """Claim signal blended with volume-weighted price momentum.

        The claim weight is its confidence clamped to [0.5, 0.9]; the market
        term takes the remainder.
        """
        price_change = stats.price_change_24h / 100
        market = self.volume_score(stats.volume_24h) * math.tanh(
            price_change * PRICE_SCALING
        )
        if claim is None:
            return _clip(market)

        conf = _confidence(claim)
        claim_weight = _clip(conf, 0.5, 0.9)
        return _clip(conf * claim.sign * claim_weight + market * (1 - claim_weight))

    @staticmethod
    def sentiment_score(claim: Optional[Claim]) -> float:
        """Claim signal with risk-flag penalties and a credibility boost."""
        if claim is None:
            return 0.0

        conf = _confidence(claim)
        penalty = 1.0
        for flag in claim.risk_flags:
            penalty *= SENTIMENT_FLAG_PENALTIES.get(flag, 1.0)

        boost = 1.0
        for above, factor in CREDIBILITY_BOOSTS:
            if conf > above:
                boost = factor
                break

        return _clip(conf * claim.sign * penalty * boost)

    @staticmethod
    def technical_score(
        claim: Optional[Claim],
        stats: MarketStats,
        technical: Optional[TechnicalIndicators] = None,
    ) -> float:
        """RSI mean-reversion + MACD trend + volatility proxy (0.4/0.4/0.2).

        Without a technical claim the score comes from price and volume
        changes alone. With a claim, indicators come from the technical data
        first and the claim's own ``rsi`` / ``macd`` / ``volatility_30d``
        signals second; with no indicator at all the claim signal is used.
        """
        if claim is None:
            price_signal = math.tanh(stats.price_change_24h / 100 * 2)
            volume_signal = math.tanh(stats.volume_change_24h / 100 * 0.5)
            return _clip(price_signal * 0.7 + volume_signal * 0.3)

        rsi = technical.rsi if technical is not None else None
        macd = technical.macd if technical is not None else None
        vol = technical.awesome_oscillator if technical is not None else None
        if rsi is None or macd is None:
            rsi = rsi if rsi is not None else claim.signals.get("rsi")
            macd = macd if macd is not None else claim.signals.get("macd")
            vol = vol if vol is not None else claim.signals.get("volatility_30d")

        if rsi is None and macd is None and vol is None:
            return _clip(_confidence(claim) * claim.sign)

        rsi_signal = 0.0
        if rsi is not None:
            if rsi < RSI_OVERSOLD:
                rsi_signal = (RSI_OVERSOLD - rsi) / 30
            elif rsi > RSI_OVERBOUGHT:
                rsi_signal = -(rsi - RSI_OVERBOUGHT) / 30
        macd_signal = math.tanh(macd * 0.001) if macd is not None else 0.0
        vol_signal = min(abs(vol) * 0.01, 0.5) if vol is not None else 0.0

        return _clip(
            rsi_signal * TECHNICAL_WEIGHTS["rsi"]
            + macd_signal * TECHNICAL_WEIGHTS["macd"]
            + vol_signal * TECHNICAL_WEIGHTS["volatility"]
        )

    # ------------------------------------------------------------------
    # Market scores
    # ------------------------------------------------------------------
    @staticmethod
    def momentum_score(
        stats: MarketStats, technical: Optional[TechnicalIndicators] = None
    ) -> float:
        """Price/volume momentum, blended 60/40 with MACD when available."""
        price_change = stats.price_change_24h / 100
        volume_change = stats.volume_change_24h / 100

        price_momentum = math.tanh(price_change * PRICE_SCALING)
        volume_momentum = math.tanh(volume_change * VOLUME_SCALING)

        if abs(volume_change) > abs(price_change) * 2:
            price_weight = 0.6
        elif abs(price_change) > abs(volume_change) * 2:
            price_weight = 0.8
        else:
            price_weight = 0.7
        market = price_momentum * price_weight + volume_momentum * (1 - price_weight)

        if technical is None:
            return _clip(market)
        macd_momentum = (
            math.tanh(technical.macd * 0.1) if technical.macd is not None else 0.0
        )
        return _clip(macd_momentum * 0.6 + market * 0.4)

    @staticmethod
    def volatility_score(
        stats: MarketStats, technical: Optional[TechnicalIndicators] = None
    ) -> float:
        """Scaled awesome-oscillator magnitude, else scaled |24h price change|."""
        if technical is not None and technical.awesome_oscillator is not None:
            return _clip(abs(technical.awesome_oscillator) * 0.1, 0.0, 1.0)
        return _clip(abs(stats.price_change_24h) / 100 * 2, 0.0, 1.0)

    def risk_score(self, claims: Sequence[Claim], stats: MarketStats) -> float:
        """60% confidence-weighted flag risk + 30% volatility + 10% thin volume."""
        weights = np.array([_confidence(c) for c in claims], dtype=float)
        flag_risk = np.array([len(c.risk_flags) * RISK_PER_FLAG for c in claims])
        total_weight = float(weights.sum()) if claims else 0.0
        claim_risk = (
            float((flag_risk * weights).sum()) / total_weight if total_weight > 0 else 0.0
        )

        volatility = self.volatility_score(stats)
        volume_risk = max(0.0, 1 - stats.volume_24h / LOW_VOLUME_REFERENCE)

        return _clip(claim_risk * 0.6 + volatility * 0.3 + volume_risk * 0.1, 0.0, 1.0)

    # ------------------------------------------------------------------
    # Confidence / recommendation
    # ------------------------------------------------------------------
    @staticmethod
    def confidence_score(claims: Sequence[Claim]) -> float:
        """0.6 mean confidence + 0.3 directional agreement + 0.1 data quality.

        Agreement is 1 - stddev of the signs of the directional (non-HOLD)
        claims, so a neutral claim lowers the mean confidence but does not
        count as disagreement. Zero claims give confidence 0.
        """
        if not claims:
            return 0.0

        mean_conf = float(np.mean([_confidence(c) for c in claims]))
        signs = [c.sign for c in claims if c.sign != 0]
        consistency = 1.0 - float(np.std(signs)) if signs else 1.0
        data_quality = float(
            np.mean([max(0.0, 1 - len(c.risk_flags) * RISK_PER_FLAG) for c in claims])
        )
        return _clip(mean_conf * 0.6 + consistency * 0.3 + data_quality * 0.1, 0.0, 1.0)

    @staticmethod
    def recommend(
        signal: float,
        confidence: float,
        risk_score: float,
        risk_profile: RiskProfile,
    ) -> Recommendation:
        """Threshold the overall signal, gated by confidence and risk."""
        if confidence < risk_profile.min_confidence or risk_score > risk_profile.max_risk:
            return Recommendation.HOLD
        if signal > risk_profile.buy_threshold:
            return Recommendation.BUY
        if signal < risk_profile.sell_threshold:
            return Recommendation.SELL
        return Recommendation.HOLD

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _first_claim_per_role(claims: Sequence[Claim]) -> dict[Role, Claim]:
        by_role: dict[Role, Claim] = {}
        for claim in claims:
            by_role.setdefault(claim.role, claim)
        return by_role

    @staticmethod
    def _time_horizon(
        by_role: Mapping[Role, Claim],
        momentum: float,
        technical: Optional[TechnicalIndicators],
    ) -> TimeHorizon:
        tech_claim = by_role.get(Role.TECHNICAL)
        rsi = tech_claim.signals.get("rsi") if tech_claim is not None else None
        if rsi is None and technical is not None:
            rsi = technical.rsi
        if (
            abs(momentum) > STRONG_MOMENTUM
            and rsi is not None
            and (rsi < RSI_OVERSOLD or rsi > RSI_OVERBOUGHT)
        ):
            return TimeHorizon.SHORT

        fundamental = by_role.get(Role.FUNDAMENTAL)
        if fundamental is not None and fundamental.confidence > LONG_HORIZON_CONFIDENCE:
            return TimeHorizon.LONG
        return TimeHorizon.MEDIUM

    @staticmethod
    def _rationale(
        by_role: Mapping[Role, Claim],
        signal: float,
        recommendation: Recommendation,
    ) -> str:
        parts = [f"{recommendation.value} - Signal: {signal * 100:.1f}%"]
        for role in (Role.FUNDAMENTAL, Role.SENTIMENT, Role.TECHNICAL):
            claim = by_role.get(role)
            if claim is None:
                continue
            parts.append(
                f"{role.value.capitalize()}: {claim.call.upper()} "
                f"({claim.confidence * 100:.1f}% confidence)"
            )
        return " | ".join(parts)
