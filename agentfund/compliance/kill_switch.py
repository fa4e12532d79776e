"""Kill switch: halt the round loop and flatten exposure.

Triggering only SETS a flag; it is safe to call from any task or thread while
a round is in flight. The round state machine checks the flag at the top of
every loop iteration and before every order submission, and cuts its wait
between rounds short through :meth:`KillSwitch.wait`. When it observes the flag
it calls :meth:`KillSwitch.flatten`, which asks the execution adapter to close
all exposure exactly once. A failure while flattening is reported and
recorded but never retried automatically; leaving the halted state requires a
process restart.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from agentfund.core.exceptions import KillSwitchDisabledError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------
@dataclass
class KillSwitchResult:
    """Outcome of a flatten attempt.

    Attributes:
        reason: Why the switch was triggered.
        source: ``"manual"`` or ``"internal"``.
        triggered_at: UTC ISO timestamp of the trigger.
        flattened: True if the emergency close call succeeded.
        error: Error text when flattening failed.
    """

    reason: str
    source: str
    triggered_at: str
    flattened: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# KillSwitch
# ---------------------------------------------------------------------------
class KillSwitch:
    """Thread-safe emergency stop flag with a one-shot flatten step.

    Args:
        enabled: When False, :meth:`trigger` raises KillSwitchDisabledError.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._source: Optional[str] = None
        self._triggered_at: Optional[str] = None
        self._result: Optional[KillSwitchResult] = None
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def is_active(self) -> bool:
        """True once the switch has been triggered."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def result(self) -> Optional[KillSwitchResult]:
        """Outcome of the flatten attempt, once it has run."""
        return self._result

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------
    def trigger(self, reason: str, source: str = "manual") -> None:
        """Engage the switch. Later triggers keep the first reason.

        Raises:
            ValueError: If ``reason`` is empty.
            KillSwitchDisabledError: If the switch is disabled by config.
        """
        if not reason or not reason.strip():
            raise ValueError("Kill switch reason must not be empty.")
        if not self.enabled:
            raise KillSwitchDisabledError(
                "Kill switch is disabled by configuration; trigger refused."
            )

        with self._lock:
            if self._event.is_set():
                logger.warning("kill_switch.already_active", reason=reason)
                return
            self._reason = reason
            self._source = source
            self._triggered_at = datetime.now(timezone.utc).isoformat()
            self._event.set()
            waiters = list(self._waiters)

        for loop, event in waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # loop already closed
                pass

        logger.critical(
            "kill_switch.triggered",
            reason=reason,
            source=source,
            timestamp=self._triggered_at,
        )

    async def wait(self) -> None:
        """Return once the switch is triggered, from this or any other thread."""
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        with self._lock:
            if self._event.is_set():
                return
            entry = (loop, event)
            self._waiters.append(entry)
        try:
            await event.wait()
        finally:
            with self._lock:
                self._waiters.remove(entry)

    async def flatten(self, execution: Any, notifier: Any = None) -> KillSwitchResult:
        """Close all exposure through ``execution.emergency_close()`` once.

        Repeated calls return the first result without touching the venue.

        Args:
            execution: Execution adapter exposing ``emergency_close()``.
            notifier: Optional notification sink for the emergency alert.

        Returns:
            KillSwitchResult describing the attempt.
        """
        if self._result is not None:
            return self._result

        reason = self._reason or "unspecified"
        if notifier is not None:
            await notifier.emergency_alert(reason)

        error: Optional[str] = None
        try:
            await execution.emergency_close()
        except Exception as exc:  # noqa: BLE001
            error = str(exc)
            logger.error("kill_switch.flatten_failed", reason=reason, error=error)
            if notifier is not None:
                await notifier.emergency_alert(f"Emergency close failed: {error}")

        self._result = KillSwitchResult(
            reason=reason,
            source=self._source or "manual",
            triggered_at=self._triggered_at or datetime.now(timezone.utc).isoformat(),
            flattened=error is None,
            error=error,
        )
        logger.critical(
            "kill_switch.flatten_finished",
            flattened=self._result.flattened,
            error=error,
        )
        return self._result
