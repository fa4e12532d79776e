"""Pre-trade risk checks.

- RiskLimitChecker: Per-profile position, leverage, cash and count limits
- RiskLimits: Frozen limits for one risk profile
"""

from agentfund.risk.risk_limits import RISK_LIMITS, RiskLimitChecker, RiskLimits

__all__ = [
    "RISK_LIMITS",
    "RiskLimitChecker",
    "RiskLimits",
]
