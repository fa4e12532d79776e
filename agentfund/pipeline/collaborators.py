"""Protocols for the external collaborators driven by the round state machine.

The engine owns none of these: market data, news, technical indicators,
claim generation, verification, risk checks, execution and persistence are
all injected. Each protocol lists only what the round actually calls.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional, Protocol, Sequence, runtime_checkable

from agentfund.core.risk_profiles import RiskProfile
from agentfund.core.schemas import (
    Claim,
    Evidence,
    MarketStats,
    NewsItem,
    OrderSpec,
    Position,
    RiskCheckResult,
    TechnicalIndicators,
    UniverseFilter,
    VerificationResult,
)
from agentfund.portfolio.portfolio_constructor import TargetWeight


@runtime_checkable
class MarketDataProvider(Protocol):
    """Universe selection and 24h market statistics."""

    async def get_universe(self, filters: UniverseFilter) -> list[str]: ...

    async def get_market_stats(self, ticker: str) -> Optional[MarketStats]: ...


@runtime_checkable
class NewsProvider(Protocol):
    """News search over a time window."""

    async def search(
        self, query: str, start: datetime, end: datetime
    ) -> list[NewsItem]: ...


@runtime_checkable
class FactStore(Protocol):
    """Evidence persistence and lookup."""

    async def put_news(self, items: Sequence[NewsItem]) -> None: ...

    async def put_evidence(self, evidence: Sequence[Evidence]) -> None: ...

    async def find_evidence(
        self, ticker: str, since: datetime, until: datetime
    ) -> list[Evidence]: ...


@runtime_checkable
class TechnicalProvider(Protocol):
    """Technical indicator readings per ticker."""

    async def get_technical_indicators(
        self, ticker: str, timeframe: str
    ) -> Optional[TechnicalIndicators]: ...


@runtime_checkable
class Verifier(Protocol):
    """Claim freshness / relevance gate."""

    async def verify_claims(
        self, claims: Sequence[Claim], cutoff: datetime
    ) -> VerificationResult: ...


@runtime_checkable
class RiskService(Protocol):
    """Pre-trade limit checks."""

    async def check_limits(
        self,
        target_weights: Sequence[TargetWeight],
        current_positions: Sequence[Position],
        market_stats: Mapping[str, MarketStats],
        risk_profile: RiskProfile,
    ) -> RiskCheckResult: ...


@runtime_checkable
class ExecutionAdapter(Protocol):
    """Execution venue: positions, orders and the emergency close."""

    async def get_positions(self) -> list[Position]: ...

    async def place_order(self, spec: OrderSpec) -> str: ...

    async def emergency_close(self) -> None: ...
