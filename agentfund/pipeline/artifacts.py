"""Round artifact and the write-only round recorder.

RoundArtifact is the complete, auditable record of one decision round: what
was fetched, which claims survived verification, the fused signals, the
consensus ranking, the target weights, the risk verdict and the orders.

RoundRecorder is the persistence sink protocol; InMemoryRoundRecorder keeps
everything in process memory for dry runs and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from agentfund.core.enums import RoundStatus
from agentfund.core.schemas import Claim, Order, RiskViolation
from agentfund.portfolio.consensus_builder import Conflict, ConsensusRecord
from agentfund.portfolio.portfolio_constructor import TargetWeight
from agentfund.portfolio.signal_processor import SignalAnalysis


# ---------------------------------------------------------------------------
# RoundArtifact
# ---------------------------------------------------------------------------
@dataclass
class RoundArtifact:
    """Output of one decision round.

    Attributes:
        round_id: Unique id of the round.
        started_at: UTC start time.
        finished_at: UTC end time (None while running).
        status: running / completed / failed.
        skipped: True when the round ended early for lack of market data.
        universe: Symbols selected for the round.
        claims: Verified claims.
        rejected_claims: Claims rejected by verification.
        signals: Fused signal analyses.
        consensus: Ranked consensus records.
        conflicts: Inter-role conflicts (advisory).
        target_weights: Proposed target weights.
        orders: Submitted / failed / skipped orders.
        risk_violations: Verification and risk-check violations.
        risk_ok: Risk-check verdict (None if the check did not run).
        error: Failure description for failed rounds.
        failed_stage: Name of the stage that failed.
        total_pnl: Unrealized + realized P&L after execution.
        step_timings: Per-stage wall-clock seconds.
    """

    round_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: RoundStatus = RoundStatus.RUNNING
    skipped: bool = False
    universe: list[str] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)
    rejected_claims: list[Claim] = field(default_factory=list)
    signals: list[SignalAnalysis] = field(default_factory=list)
    consensus: list[ConsensusRecord] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    target_weights: list[TargetWeight] = field(default_factory=list)
    orders: list[Order] = field(default_factory=list)
    risk_violations: list[RiskViolation] = field(default_factory=list)
    risk_ok: Optional[bool] = None
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    total_pnl: float = 0.0
    step_timings: dict[str, float] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        """Flat summary suitable for log lines and notifications."""
        return {
            "round_id": self.round_id,
            "status": self.status.value,
            "skipped": self.skipped,
            "n_assets": len(self.universe),
            "n_claims": len(self.claims),
            "n_rejected": len(self.rejected_claims),
            "n_consensus": len(self.consensus),
            "n_conflicts": len(self.conflicts),
            "n_targets": len(self.target_weights),
            "n_orders": len(self.orders),
            "n_violations": len(self.risk_violations),
            "risk_ok": self.risk_ok,
            "total_pnl": self.total_pnl,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# RoundRecorder
# ---------------------------------------------------------------------------
@runtime_checkable
class RoundRecorder(Protocol):
    """Write-only persistence sink for round lifecycle and results."""

    async def start_round(self, round_id: str, started_at: datetime) -> None: ...

    async def end_round(
        self,
        round_id: str,
        status: RoundStatus,
        claims_count: int,
        orders_count: int,
        total_pnl: float,
    ) -> None: ...

    async def store_claims(self, round_id: str, claims: Sequence[Claim]) -> None: ...

    async def store_signals(
        self, round_id: str, signals: Sequence[SignalAnalysis]
    ) -> None: ...

    async def store_consensus(
        self, round_id: str, consensus: Sequence[ConsensusRecord]
    ) -> None: ...

    async def store_orders(self, round_id: str, orders: Sequence[Order]) -> None: ...


class InMemoryRoundRecorder:
    """RoundRecorder keeping rounds and their results in dicts."""

    def __init__(self) -> None:
        self.rounds: dict[str, dict[str, Any]] = {}
        self.claims: dict[str, list[Claim]] = {}
        self.signals: dict[str, list[SignalAnalysis]] = {}
        self.consensus: dict[str, list[ConsensusRecord]] = {}
        self.orders: dict[str, list[Order]] = {}

    async def start_round(self, round_id: str, started_at: datetime) -> None:
        self.rounds[round_id] = {
            "started_at": started_at,
            "status": RoundStatus.RUNNING,
        }

    async def end_round(
        self,
        round_id: str,
        status: RoundStatus,
        claims_count: int,
        orders_count: int,
        total_pnl: float,
    ) -> None:
        self.rounds.setdefault(round_id, {}).update(
            status=status,
            claims_count=claims_count,
            orders_count=orders_count,
            total_pnl=total_pnl,
        )

    async def store_claims(self, round_id: str, claims: Sequence[Claim]) -> None:
        self.claims[round_id] = list(claims)

    async def store_signals(self, round_id: str, signals: Sequence[SignalAnalysis]) -> None:
        self.signals[round_id] = list(signals)

    async def store_consensus(
        self, round_id: str, consensus: Sequence[ConsensusRecord]
    ) -> None:
        self.consensus[round_id] = list(consensus)

    async def store_orders(self, round_id: str, orders: Sequence[Order]) -> None:
        self.orders[round_id] = list(orders)
