"""Claim-generator capability interface.

A claim generator, given a role and a RoleContext bundle, returns structured
Claim records. Whatever it does internally (rules, a language model, a remote
service) is opaque to the engine: prompt building and response parsing live
behind this interface, never in the fusion pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Protocol, Sequence, runtime_checkable

from agentfund.core.enums import Role
from agentfund.core.risk_profiles import RiskProfile
from agentfund.core.schemas import (
    Claim,
    Evidence,
    MarketStats,
    NewsItem,
    TechnicalIndicators,
)


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RoleContext:
    """Inputs handed to a claim generator for one role in one round.

    Attributes:
        round_id: Identifier of the round the claims belong to.
        universe: Tradable symbols for the round.
        facts: News items fetched for the round's lookback window.
        market_stats: Symbol -> 24h market statistics.
        technical_data: Symbol -> technical indicators (may be partial).
        evidence: Stored evidence records for the universe.
        risk_profile: Active risk profile.
        timestamp: Round start time.
    """

    round_id: str
    universe: Sequence[str]
    facts: Sequence[NewsItem]
    market_stats: Mapping[str, MarketStats]
    risk_profile: RiskProfile
    timestamp: datetime
    technical_data: Mapping[str, TechnicalIndicators] = field(default_factory=dict)
    evidence: Sequence[Evidence] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------
@runtime_checkable
class ClaimGenerator(Protocol):
    """Produces the claims of one analysis role."""

    async def run_role(self, role: Role, context: RoleContext) -> list[Claim]:
        """Return the role's claims for the round described by ``context``."""
        ...
