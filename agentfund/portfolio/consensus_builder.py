"""Consensus ranking and inter-role conflict detection.

ConsensusBuilder ranks the fused signals of a round for reporting:
- drops signals too bearish to rank (overall signal <= -0.5),
- keeps the top ``max_positions``,
- scores each as overall_signal * confidence * (1 - risk_score),
- annotates each record with claim coverage, average confidence and a
  liquidity score.

Conflict detection compares the claims of different roles on the same ticker.
Conflicts are advisory: they are reported and recorded, never blocking.

This module is pure computation -- no database or I/O access.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Mapping, Optional, Sequence

import structlog

from agentfund.core.enums import ConflictSeverity, Role
from agentfund.core.schemas import Claim, MarketStats
from agentfund.portfolio.signal_processor import SignalAnalysis

log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
# Signals at or below this are never ranked
RANKING_FLOOR = -0.5
N_ROLES = len(Role)
LIQUIDITY_VOLUME_REFERENCE = 1_000_000.0


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ConsensusRecord:
    """Ranked consensus for one ticker.

    Attributes:
        ticker: Asset symbol.
        avg_confidence: Mean confidence of the ticker's claims.
        coverage: Fraction of roles that produced a claim, in [0, 1].
        liquidity: Volume/spread liquidity score in [0, 1].
        final_score: overall_signal * confidence * (1 - risk_score).
        claim_ids: Ids of the contributing claims.
    """

    ticker: str
    avg_confidence: float
    coverage: float
    liquidity: float
    final_score: float
    claim_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Conflict:
    """Disagreement between two roles on one ticker.

    Attributes:
        ticker: Asset symbol.
        roles: The two disagreeing roles.
        claim_ids: The two claim ids, in the same order as ``roles``.
        kind: ``"direction"`` (opposite calls) or ``"confidence"`` (same call,
            confidence gap above the threshold).
        confidence_gap: Absolute confidence difference.
        severity: low / medium / high.
    """

    ticker: str
    roles: tuple[Role, Role]
    claim_ids: tuple[str, str]
    kind: str
    confidence_gap: float
    severity: ConflictSeverity


# ---------------------------------------------------------------------------
# ConsensusBuilder
# ---------------------------------------------------------------------------
class ConsensusBuilder:
    """Ranks fused signals and flags inter-role disagreement.

    Args:
        conflict_threshold: Confidence gap above which two same-direction
            claims are flagged.
    """

    def __init__(self, conflict_threshold: float = 0.2) -> None:
        self.conflict_threshold = conflict_threshold

    def build_consensus(
        self,
        signals: Sequence[SignalAnalysis],
        max_positions: int,
        claims: Optional[Sequence[Claim]] = None,
        market_stats: Optional[Mapping[str, MarketStats]] = None,
    ) -> list[ConsensusRecord]:
        """Rank signals into consensus records.

        Args:
            signals: Signal analyses, sorted descending by overall signal.
            max_positions: Maximum number of records kept.
            claims: Optional claims used for coverage / confidence / ids.
            market_stats: Optional market stats used for liquidity.

        Returns:
            ConsensusRecord list sorted descending by final_score.
        """
        by_ticker: dict[str, list[Claim]] = defaultdict(list)
        for claim in claims or ():
            by_ticker[claim.ticker].append(claim)
        market_stats = market_stats or {}

        ranked = [s for s in signals if s.overall_signal > RANKING_FLOOR]
        ranked = ranked[: max(0, max_positions)]

        records: list[ConsensusRecord] = []
        for sig in ranked:
            ticker_claims = by_ticker.get(sig.ticker, [])
            if ticker_claims:
                avg_conf = sum(c.confidence for c in ticker_claims) / len(ticker_claims)
            else:
                avg_conf = sig.confidence
            records.append(
                ConsensusRecord(
                    ticker=sig.ticker,
                    avg_confidence=avg_conf,
                    coverage=len({c.role for c in ticker_claims}) / N_ROLES,
                    liquidity=self.liquidity_score(market_stats.get(sig.ticker)),
                    final_score=sig.overall_signal * sig.confidence * (1 - sig.risk_score),
                    claim_ids=tuple(c.id for c in ticker_claims),
                )
            )

        records.sort(key=lambda r: r.final_score, reverse=True)
        log.info(
            "consensus_built",
            n_signals=len(signals),
            n_records=len(records),
            top=records[0].ticker if records else None,
        )
        return records

    def detect_conflicts(
        self,
        claims: Sequence[Claim],
        threshold: Optional[float] = None,
    ) -> list[Conflict]:
        """Compare claims pairwise across roles for each ticker.

        A direction conflict is one bullish and one bearish claim; its
        severity grows as the confidence gap shrinks (two confident opposing
        views are worse than one weak dissent). A confidence conflict is two
        claims with the same non-neutral direction whose confidences differ by
        more than ``threshold``.

        Args:
            claims: Claims of the round.
            threshold: Confidence gap threshold (defaults to the instance's).

        Returns:
            Conflict records, in ticker then role-pair order.
        """
        threshold = self.conflict_threshold if threshold is None else threshold

        by_ticker: dict[str, list[Claim]] = defaultdict(list)
        for claim in claims:
            by_ticker[claim.ticker].append(claim)

        conflicts: list[Conflict] = []
        for ticker in sorted(by_ticker):
            for a, b in combinations(by_ticker[ticker], 2):
                if a.role == b.role:
                    continue
                conflict = self._compare(ticker, a, b, threshold)
                if conflict is not None:
                    conflicts.append(conflict)

        if conflicts:
            log.info(
                "conflicts_detected",
                n_conflicts=len(conflicts),
                tickers=sorted({c.ticker for c in conflicts}),
            )
        return conflicts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def liquidity_score(stats: Optional[MarketStats]) -> float:
        """0.7 * normalized volume + 0.3 * tight-spread score, in [0, 1]."""
        if stats is None:
            return 0.0
        volume = min(stats.volume_24h / LIQUIDITY_VOLUME_REFERENCE, 1.0)
        spread = max(0.0, 1 - stats.spread / 100)
        return max(0.0, min(1.0, 0.7 * volume + 0.3 * spread))

    @staticmethod
    def _compare(
        ticker: str, a: Claim, b: Claim, threshold: float
    ) -> Optional[Conflict]:
        gap = abs(a.confidence - b.confidence)

        if a.sign * b.sign < 0:
            kind = "direction"
            if gap < 0.2:
                severity = ConflictSeverity.HIGH
            elif gap < 0.4:
                severity = ConflictSeverity.MEDIUM
            else:
                severity = ConflictSeverity.LOW
        elif a.sign == b.sign != 0 and gap > threshold:
            kind = "confidence"
            severity = ConflictSeverity.MEDIUM if gap >= 0.5 else ConflictSeverity.LOW
        else:
            return None

        return Conflict(
            ticker=ticker,
            roles=(a.role, b.role),
            claim_ids=(a.id, b.id),
            kind=kind,
            confidence_gap=gap,
            severity=severity,
        )
