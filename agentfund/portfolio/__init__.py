"""Signal fusion and portfolio construction package.

Provides the claims-to-portfolio pipeline:
- SignalProcessor: Fuses role claims and market data into per-ticker signals.
- ConsensusBuilder: Ranks signals and flags inter-role conflicts.
- PortfolioConstructor: Risk-adjusted ranking, correlation penalty, clipping.
- PositionSizer: Half-Kelly sizing with confidence and risk adjustments.
"""

from agentfund.portfolio.consensus_builder import (
    Conflict,
    ConsensusBuilder,
    ConsensusRecord,
)
from agentfund.portfolio.portfolio_constructor import (
    PortfolioConstructor,
    TargetWeight,
)
from agentfund.portfolio.position_sizer import PositionSizer
from agentfund.portfolio.signal_processor import SignalAnalysis, SignalProcessor

__all__ = [
    "Conflict",
    "ConsensusBuilder",
    "ConsensusRecord",
    "PortfolioConstructor",
    "PositionSizer",
    "SignalAnalysis",
    "SignalProcessor",
    "TargetWeight",
]
