"""Claim generation interface and claim verification.

Re-exports:
- ClaimGenerator: Capability interface returning structured claims per role
- RoleContext: Inputs bundle handed to a claim generator
- ClaimVerifier: Freshness / relevance / source checks on claims
"""

from agentfund.agents.base import ClaimGenerator, RoleContext
from agentfund.agents.verifier import ClaimVerifier

__all__ = [
    "ClaimGenerator",
    "ClaimVerifier",
    "RoleContext",
]
