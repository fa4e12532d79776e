"""Static risk-profile table.

Each named profile (averse / neutral / bold) supplies the fusion weights used
by the signal processor, the recommendation thresholds, and the sizing and
position-count limits used by the portfolio constructor. Profiles are frozen
and looked up by key; nothing mutates them at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from agentfund.core.enums import RiskProfileName


@dataclass(frozen=True)
class FusionWeights:
    """Weights applied to each sub-score when fusing the overall signal.

    Attributes:
        fundamental: Weight of the fundamental sub-score.
        sentiment: Weight of the sentiment sub-score.
        technical: Weight of the technical sub-score.
        momentum: Weight of the momentum score.
    """

    fundamental: float
    sentiment: float
    technical: float
    momentum: float


@dataclass(frozen=True)
class RiskProfile:
    """Immutable risk-tolerance configuration.

    Attributes:
        name: Profile key.
        weights: Fusion weights for the overall signal.
        buy_threshold: Overall signal above which a BUY is issued.
        sell_threshold: Overall signal below which a SELL is issued.
        min_confidence: Confidence floor below which everything is HOLD.
        max_risk: Risk score ceiling above which everything is HOLD.
        max_positions: Maximum number of target positions.
        max_weight_per_position: Cap applied to every normalized target weight.
        max_position_size: Cap applied to the half-Kelly fraction.
    """

    name: RiskProfileName
    weights: FusionWeights
    buy_threshold: float
    sell_threshold: float
    min_confidence: float
    max_risk: float
    max_positions: int
    max_weight_per_position: float
    max_position_size: float


RISK_PROFILES: Mapping[RiskProfileName, RiskProfile] = MappingProxyType(
    {
        # Averse leans on fundamentals
        RiskProfileName.AVERSE: RiskProfile(
            name=RiskProfileName.AVERSE,
            weights=FusionWeights(
                fundamental=0.4, sentiment=0.2, technical=0.3, momentum=0.1
            ),
            buy_threshold=0.2,
            sell_threshold=-0.2,
            min_confidence=0.7,
            max_risk=0.3,
            max_positions=5,
            max_weight_per_position=0.15,
            max_position_size=0.05,
        ),
        RiskProfileName.NEUTRAL: RiskProfile(
            name=RiskProfileName.NEUTRAL,
            weights=FusionWeights(
                fundamental=0.3, sentiment=0.3, technical=0.3, momentum=0.1
            ),
            buy_threshold=0.1,
            sell_threshold=-0.1,
            min_confidence=0.6,
            max_risk=0.5,
            max_positions=8,
            max_weight_per_position=0.20,
            max_position_size=0.10,
        ),
        # Bold leans on momentum
        RiskProfileName.BOLD: RiskProfile(
            name=RiskProfileName.BOLD,
            weights=FusionWeights(
                fundamental=0.2, sentiment=0.2, technical=0.3, momentum=0.3
            ),
            buy_threshold=0.05,
            sell_threshold=-0.05,
            min_confidence=0.5,
            max_risk=0.7,
            max_positions=12,
            max_weight_per_position=0.25,
            max_position_size=0.20,
        ),
    }
)


def get_risk_profile(name: RiskProfileName | str | RiskProfile) -> RiskProfile:
    """Look up a risk profile by key.

    Args:
        name: Profile key (enum or string), or an already-resolved profile.

    Returns:
        The frozen RiskProfile.

    Raises:
        ValueError: If the key is not a known profile.
    """
    if isinstance(name, RiskProfile):
        return name
    try:
        key = RiskProfileName(name)
    except ValueError as exc:
        raise ValueError(
            f"Unknown risk profile '{name}'. "
            f"Known profiles: {[p.value for p in RiskProfileName]}"
        ) from exc
    return RISK_PROFILES[key]
