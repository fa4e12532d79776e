"""Shared enumerations used across the decision engine.

All enums use the (str, Enum) mixin pattern so their values are
serializable strings, compatible with log output and JSON reporting.
"""

from enum import Enum


class Role(str, Enum):
    """Analysis role that produced a claim."""

    FUNDAMENTAL = "fundamental"
    SENTIMENT = "sentiment"
    TECHNICAL = "technical"


class Direction(str, Enum):
    """Explicit directional view attached to a claim."""

    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Recommendation(str, Enum):
    """Per-asset trading recommendation."""

    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"


class TimeHorizon(str, Enum):
    """Expected holding horizon of a signal."""

    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class Side(str, Enum):
    """Side of a target weight or order."""

    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class RiskProfileName(str, Enum):
    """Named risk-tolerance configuration."""

    AVERSE = "averse"
    NEUTRAL = "neutral"
    BOLD = "bold"


class EvidenceKind(str, Enum):
    """Discriminator of an evidence record."""

    NEWS = "news"
    MARKET = "market"
    TECH = "tech"


class Severity(str, Enum):
    """Severity of a verification or risk violation."""

    WARNING = "warning"
    CRITICAL = "critical"


class ConflictSeverity(str, Enum):
    """Severity of an inter-role disagreement."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RoundStatus(str, Enum):
    """Lifecycle status of a single decision round."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MachineState(str, Enum):
    """States of the round state machine.

    KILL_SWITCH_ACTIVE is absorbing: only a process restart leaves it.
    """

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    KILL_SWITCH_ACTIVE = "KILL_SWITCH_ACTIVE"
