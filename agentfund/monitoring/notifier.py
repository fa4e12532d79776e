"""Round-stage notification sinks.

Provides:
- NotificationSink: protocol with one coroutine per round stage
- LogNotifier: structured log lines via structlog
- TelegramNotifier: HTML messages via the Telegram Bot API (httpx + tenacity)
- SafeNotifier: fire-and-forget fan-out wrapper; every call is best-effort, a
  failing or slow sink is logged and skipped, never awaited by the round
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence, runtime_checkable

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from agentfund.core.schemas import Claim, Order, Position, RiskCheckResult

if TYPE_CHECKING:
    from agentfund.pipeline.artifacts import RoundArtifact
    from agentfund.portfolio.consensus_builder import Conflict, ConsensusRecord

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------
@runtime_checkable
class NotificationSink(Protocol):
    """Receives a summary of each round stage."""

    async def round_started(self, round_id: str, universe: Sequence[str]) -> None: ...

    async def claims_generated(
        self, round_id: str, role: str, claims: Sequence[Claim], elapsed_seconds: float
    ) -> None: ...

    async def consensus_built(
        self,
        round_id: str,
        consensus: Sequence["ConsensusRecord"],
        conflicts: Sequence["Conflict"],
    ) -> None: ...

    async def risk_assessed(self, round_id: str, result: RiskCheckResult) -> None: ...

    async def orders_executed(
        self, round_id: str, orders: Sequence[Order], positions: Sequence[Position]
    ) -> None: ...

    async def round_completed(self, artifact: "RoundArtifact") -> None: ...

    async def round_failed(self, round_id: str, error: str) -> None: ...

    async def emergency_alert(self, message: str) -> None: ...


# ---------------------------------------------------------------------------
# LogNotifier
# ---------------------------------------------------------------------------
class LogNotifier:
    """Notification sink writing structured log events."""

    def __init__(self) -> None:
        self.log = structlog.get_logger("notifier").bind(sink="log")

    async def round_started(self, round_id: str, universe: Sequence[str]) -> None:
        self.log.info("notify.round_started", round_id=round_id, n_assets=len(universe))

    async def claims_generated(
        self, round_id: str, role: str, claims: Sequence[Claim], elapsed_seconds: float
    ) -> None:
        self.log.info(
            "notify.claims_generated",
            round_id=round_id,
            role=role,
            n_claims=len(claims),
            elapsed_seconds=round(elapsed_seconds, 3),
        )

    async def consensus_built(self, round_id, consensus, conflicts) -> None:
        self.log.info(
            "notify.consensus_built",
            round_id=round_id,
            n_records=len(consensus),
            n_conflicts=len(conflicts),
        )

    async def risk_assessed(self, round_id: str, result: RiskCheckResult) -> None:
        self.log.info(
            "notify.risk_assessed",
            round_id=round_id,
            ok=result.ok,
            n_violations=len(result.violations),
        )

    async def orders_executed(self, round_id, orders, positions) -> None:
        self.log.info(
            "notify.orders_executed",
            round_id=round_id,
            n_orders=len(orders),
            n_positions=len(positions),
        )

    async def round_completed(self, artifact: "RoundArtifact") -> None:
        self.log.info("notify.round_completed", **artifact.summary())

    async def round_failed(self, round_id: str, error: str) -> None:
        self.log.error("notify.round_failed", round_id=round_id, error=error)

    async def emergency_alert(self, message: str) -> None:
        self.log.critical("notify.emergency_alert", message=message)


# ---------------------------------------------------------------------------
# TelegramNotifier
# ---------------------------------------------------------------------------
class TelegramNotifier:
    """Telegram Bot API sink posting HTML messages to one chat.

    Disabled (every call is a no-op) when the token or chat id is empty.

    Args:
        bot_token: Bot API token.
        chat_id: Target chat id.
        client: Optional shared httpx client; one is created per call if None.
        max_retries: Attempts per message.
        retry_wait: Tenacity wait strategy (exponential with jitter default).
    """

    BASE_URL = "https://api.telegram.org"
    TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        retry_wait: Any = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.max_retries = max_retries
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=1, max=30, jitter=5)
        self._client = client
        self.log = structlog.get_logger("notifier").bind(sink="telegram")

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def send_message(self, text: str) -> Optional[httpx.Response]:
        """POST ``text`` to ``sendMessage``; retried on transport errors."""
        if not self.enabled:
            return None

        url = f"{self.BASE_URL}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if self._client is not None:
            return await self._post_with_retry(self._client, url, payload)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.TIMEOUT_SECONDS)) as client:
            return await self._post_with_retry(client, url, payload)

    async def _post_with_retry(
        self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]
    ) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(
                (httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)
            ),
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                self.log.debug(
                    "telegram_request",
                    attempt=attempt.retry_state.attempt_number,
                )
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return response
        raise httpx.HTTPError("Telegram request failed after retries")  # pragma: no cover

    # ------------------------------------------------------------------
    # Stage messages
    # ------------------------------------------------------------------
    async def round_started(self, round_id: str, universe: Sequence[str]) -> None:
        assets = ", ".join(universe[:10])
        more = f" (+{len(universe) - 10} more)" if len(universe) > 10 else ""
        await self.send_message(
            f"🚀 <b>Round started</b>\n<code>{round_id}</code>\n"
            f"Universe ({len(universe)}): {assets}{more}"
        )

    async def claims_generated(
        self, round_id: str, role: str, claims: Sequence[Claim], elapsed_seconds: float
    ) -> None:
        lines = [
            f"• {c.ticker}: {c.call.upper()} ({c.confidence:.0%})" for c in claims[:5]
        ]
        await self.send_message(
            f"🧠 <b>{role.capitalize()} analysis</b> ({elapsed_seconds:.1f}s)\n"
            f"<code>{round_id}</code>\n{len(claims)} claims\n" + "\n".join(lines)
        )

    async def consensus_built(self, round_id, consensus, conflicts) -> None:
        lines = [
            f"{i}. {r.ticker}: score {r.final_score:.3f}, conf {r.avg_confidence:.0%}"
            for i, r in enumerate(consensus[:5], start=1)
        ]
        await self.send_message(
            f"🤝 <b>Consensus</b>\n<code>{round_id}</code>\n"
            + ("\n".join(lines) or "No ranked assets")
            + f"\nConflicts: {len(conflicts)}"
        )

    async def risk_assessed(self, round_id: str, result: RiskCheckResult) -> None:
        status = "✅ passed" if result.ok else "⛔ failed"
        lines = [
            f"• [{v.severity.value}] {v.kind}: {v.detail}" for v in result.violations[:5]
        ]
        await self.send_message(
            f"🛡 <b>Risk check {status}</b>\n<code>{round_id}</code>\n" + "\n".join(lines)
        )

    async def orders_executed(self, round_id, orders, positions) -> None:
        lines = [f"• {o.side.value.upper()} {o.symbol} {o.weight:.2%} [{o.status}]" for o in orders]
        await self.send_message(
            f"📈 <b>Orders</b>\n<code>{round_id}</code>\n"
            + ("\n".join(lines) or "No orders")
            + f"\nOpen positions: {len(positions)}"
        )

    async def round_completed(self, artifact: "RoundArtifact") -> None:
        s = artifact.summary()
        await self.send_message(
            f"🏁 <b>Round {s['status']}</b>\n<code>{s['round_id']}</code>\n"
            f"Claims: {s['n_claims']} | Orders: {s['n_orders']} | "
            f"P&amp;L: {s['total_pnl']:.2f}"
        )

    async def round_failed(self, round_id: str, error: str) -> None:
        await self.send_message(f"❌ <b>Round failed</b>\n<code>{round_id}</code>\n{error}")

    async def emergency_alert(self, message: str) -> None:
        await self.send_message(f"🚨 <b>EMERGENCY</b>\n{message}")


# ---------------------------------------------------------------------------
# SafeNotifier
# ---------------------------------------------------------------------------
class SafeNotifier:
    """Fans each call out to several sinks, isolating their failures.

    Every call returns as soon as the fan-out is scheduled: delivery runs in a
    background task, so a slow or unreachable sink never holds up a round.
    Await :meth:`drain` to wait for everything already scheduled.

    Args:
        sinks: Wrapped notification sinks.
        timeout_seconds: Per-sink time budget for one call.
    """

    def __init__(self, sinks: Sequence[Any], timeout_seconds: float = 10.0) -> None:
        self.sinks = list(sinks)
        self.timeout_seconds = timeout_seconds
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of fan-outs still being delivered."""
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every scheduled notification has been delivered or dropped."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, method: str, *args: Any) -> None:
        task = asyncio.get_running_loop().create_task(self._fanout(method, *args))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("notification_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("notification_failed", error=str(exc) or type(exc).__name__)

    async def _fanout(self, method: str, *args: Any) -> None:
        for sink in self.sinks:
            try:
                await asyncio.wait_for(
                    getattr(sink, method)(*args), timeout=self.timeout_seconds
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "notification_failed",
                    sink=type(sink).__name__,
                    method=method,
                    error=str(exc) or type(exc).__name__,
                )

    async def round_started(self, round_id, universe) -> None:
        self._schedule("round_started", round_id, universe)

    async def claims_generated(self, round_id, role, claims, elapsed_seconds) -> None:
        self._schedule("claims_generated", round_id, role, claims, elapsed_seconds)

    async def consensus_built(self, round_id, consensus, conflicts) -> None:
        self._schedule("consensus_built", round_id, consensus, conflicts)

    async def risk_assessed(self, round_id, result) -> None:
        self._schedule("risk_assessed", round_id, result)

    async def orders_executed(self, round_id, orders, positions) -> None:
        self._schedule("orders_executed", round_id, orders, positions)

    async def round_completed(self, artifact) -> None:
        self._schedule("round_completed", artifact)

    async def round_failed(self, round_id, error) -> None:
        self._schedule("round_failed", round_id, error)

    async def emergency_alert(self, message) -> None:
        self._schedule("emergency_alert", message)


def build_notifier(settings: Any) -> SafeNotifier:
    """Log sink always; Telegram sink when credentials are configured."""
    sinks: list[Any] = [LogNotifier()]
    if settings.telegram_enabled:
        sinks.append(TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id))
    return SafeNotifier(sinks)
