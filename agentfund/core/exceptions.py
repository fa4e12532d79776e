"""Exception hierarchy for the decision engine.

- AgentFundError: base for all engine errors
- UniverseUnavailableError: universe-level fetch failed (aborts the round)
- RoundAbortedError: a pipeline stage raised; carries the stage name
- KillSwitchActiveError: operation refused because the kill switch is engaged
- KillSwitchDisabledError: kill switch trigger refused by configuration
"""


class AgentFundError(Exception):
    """Base exception for all engine errors."""


class UniverseUnavailableError(AgentFundError):
    """Raised when the tradable universe cannot be fetched."""


class RoundAbortedError(AgentFundError):
    """Raised when a pipeline stage fails inside a round.

    Args:
        stage: Name of the failing stage (e.g. ``"claims"``).
        round_id: Identifier of the aborted round.
        cause: Original exception.
    """

    def __init__(self, stage: str, round_id: str, cause: BaseException) -> None:
        self.stage = stage
        self.round_id = round_id
        self.cause = cause
        super().__init__(f"Round {round_id} aborted at stage '{stage}': {cause}")


class KillSwitchActiveError(AgentFundError):
    """Raised when an operation is attempted while the kill switch is engaged."""


class KillSwitchDisabledError(AgentFundError):
    """Raised when the kill switch is triggered but disabled by configuration."""
