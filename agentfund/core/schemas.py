"""Pydantic v2 models for data crossing collaborator boundaries.

Evidence is a discriminated union on ``kind`` (news / market / tech) so that
each variant carries exactly the timestamp field it needs. Claims, market
statistics and technical indicators arrive from external collaborators and are
validated here; everything is frozen once constructed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from agentfund.core.enums import Direction, Role, Severity, Side

_SIGN_BY_CALL: dict[str, int] = {"BUY": 1, "SELL": -1, "HOLD": 0}
_SIGN_BY_DIRECTION: dict[Direction, int] = {
    Direction.BULLISH: 1,
    Direction.BEARISH: -1,
    Direction.NEUTRAL: 0,
}


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Evidence (tagged union)
# ---------------------------------------------------------------------------
class _EvidenceBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ticker: str
    source: str
    relevance: float = Field(..., ge=0.0, le=1.0)
    impact: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class NewsEvidence(_EvidenceBase):
    """Evidence derived from a published news item."""

    kind: Literal["news"] = "news"
    published_at: datetime
    url: Optional[str] = None
    quote: Optional[str] = None

    @property
    def timestamp(self) -> datetime:
        return self.published_at


class MarketEvidence(_EvidenceBase):
    """Evidence derived from a market-data observation."""

    kind: Literal["market"] = "market"
    observed_at: datetime

    @property
    def timestamp(self) -> datetime:
        return self.observed_at


class TechEvidence(_EvidenceBase):
    """Evidence derived from a technical indicator reading."""

    kind: Literal["tech"] = "tech"
    observed_at: datetime
    indicator: Optional[str] = None

    @property
    def timestamp(self) -> datetime:
        return self.observed_at


Evidence = Annotated[
    Union[NewsEvidence, MarketEvidence, TechEvidence],
    Field(discriminator="kind"),
]


class NewsItem(BaseModel):
    """A raw news item returned by the news provider."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    url: str
    source: str
    published_at: datetime
    sentiment: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    content: Optional[str] = None


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------
class Claim(BaseModel):
    """One analysis role's directional opinion on one ticker for one round.

    Attributes:
        id: Unique claim identifier.
        ticker: Asset symbol.
        role: Producing analysis role.
        call: Directional call text (``BUY`` / ``SELL`` / ``HOLD``).
        direction: Optional explicit direction.
        magnitude: Optional strength of the view in ``[0, 1]``.
        confidence: Confidence in ``[0, 1]``.
        evidence: Evidence records backing the claim.
        risk_flags: Free-form data-quality tags (e.g. ``"old_news"``).
        rationale: Optional free-text reasoning.
        signals: Named numeric sub-signals (e.g. ``{"rsi": 35}``).
        timestamp: When the claim was produced.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    ticker: str
    role: Role
    call: str
    direction: Optional[Direction] = None
    magnitude: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    confidence: float
    evidence: list[Evidence] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    rationale: Optional[str] = None
    signals: dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def sign(self) -> int:
        """+1 / -1 / 0 from the call, falling back to the explicit direction."""
        call = self.call.strip().upper()
        if call in _SIGN_BY_CALL:
            return _SIGN_BY_CALL[call]
        if self.direction is not None:
            return _SIGN_BY_DIRECTION[self.direction]
        return 0


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------
class MarketStats(BaseModel):
    """24h market statistics for one symbol (percent fields are in %)."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    volume_24h: float = 0.0
    price_change_24h: float = 0.0
    volume_change_24h: float = 0.0
    spread: float = 0.0


class TechnicalIndicators(BaseModel):
    """Named technical indicator readings for one symbol.

    Known fields are populated from the provider's names (``RSI``,
    ``MACD.macd``, ...); any other numeric fields are retained as extras.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    rsi: Optional[float] = Field(default=None, alias="RSI")
    macd: Optional[float] = Field(default=None, alias="MACD.macd")
    macd_signal: Optional[float] = Field(default=None, alias="MACD.signal")
    adx: Optional[float] = Field(default=None, alias="ADX")
    awesome_oscillator: Optional[float] = Field(default=None, alias="AO")


class UniverseFilter(BaseModel):
    """Filters passed to the universe provider."""

    model_config = ConfigDict(frozen=True)

    min_volume_24h: float = 1_000_000.0
    max_spread: float = 0.5
    min_liquidity: float = 0.1
    whitelist: Optional[list[str]] = None
    blacklist: Optional[list[str]] = None


# ---------------------------------------------------------------------------
# Portfolio / execution
# ---------------------------------------------------------------------------
class Position(BaseModel):
    """A currently held position as reported by the execution venue."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float
    avg_price: float
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0


class OrderSpec(BaseModel):
    """An order request handed to the execution adapter.

    ``weight`` is the fraction of capital to move; the adapter converts it to
    venue quantity.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    side: Literal[Side.BUY, Side.SELL]
    weight: float = Field(..., ge=0.0, le=1.0)
    order_type: Literal["market", "limit"] = "market"
    target_weight: float = Field(default=0.0, ge=0.0, le=1.0)


class Order(BaseModel):
    """Record of a submitted order."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str]
    symbol: str
    side: Side
    weight: float
    status: Literal["submitted", "failed", "skipped"]
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Verification / risk
# ---------------------------------------------------------------------------
class RiskViolation(BaseModel):
    """A single verification or risk-limit violation."""

    model_config = ConfigDict(frozen=True)

    kind: str
    current: float = 0.0
    limit: float = 0.0
    severity: Severity
    detail: str = ""
    ticker: Optional[str] = None
    claim_id: Optional[str] = None


class RiskCheckResult(BaseModel):
    """Outcome of the external risk check."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    violations: list[RiskViolation] = Field(default_factory=list)


class VerificationResult(BaseModel):
    """Outcome of claim verification."""

    model_config = ConfigDict(frozen=True)

    verified: list[Claim] = Field(default_factory=list)
    rejected: list[Claim] = Field(default_factory=list)
    violations: list[RiskViolation] = Field(default_factory=list)
