"""Round orchestration.

- RoundStateMachine: one decision round and the resilient loop of rounds
- RoundArtifact: auditable record of a round
- InMemoryRoundRecorder: in-process round recorder for dry runs and tests
"""

from agentfund.pipeline.artifacts import (
    InMemoryRoundRecorder,
    RoundArtifact,
    RoundRecorder,
)
from agentfund.pipeline.round_machine import RoundStateMachine

__all__ = [
    "InMemoryRoundRecorder",
    "RoundArtifact",
    "RoundRecorder",
    "RoundStateMachine",
]
