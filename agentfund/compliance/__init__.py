"""Compliance controls: the kill switch that halts trading and flattens exposure."""

from agentfund.compliance.kill_switch import KillSwitch, KillSwitchResult

__all__ = ["KillSwitch", "KillSwitchResult"]
