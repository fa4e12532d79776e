"""Round state machine -- one decision cycle and the loop of cycles.

RoundStateMachine sequences a full round:

    market_data -> evidence -> claims -> verification -> signals
    -> consensus -> portfolio -> risk -> execution -> report

Each stage is timed. A stage failure aborts the round (RoundAbortedError),
the round is recorded and reported as failed, and ``run_forever`` waits the
error cool-down before starting the next round; the loop itself never dies
on a single round's failure. Per-asset fetch failures are missing data, not
failures: the asset is dropped (market stats) or treated as having no
indicators (technical data).

States: IDLE -> RUNNING -> {COMPLETED, FAILED} -> IDLE. KILL_SWITCH_ACTIVE is
reachable from any state and absorbing. The kill-switch flag is checked at
the top of every loop iteration and before every order submission, and
triggering it cuts the wait between rounds short. Notifications are
fire-and-forget: a slow sink never holds up a round.

The round id is bound into a per-round logger and passed explicitly to every
stage; it is never read back from shared state.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

import structlog

from agentfund.agents.base import ClaimGenerator, RoleContext
from agentfund.agents.verifier import ClaimVerifier
from agentfund.compliance.kill_switch import KillSwitch
from agentfund.core.config import Settings, settings as default_settings
from agentfund.core.enums import MachineState, Role, RoundStatus
from agentfund.core.exceptions import (
    AgentFundError,
    KillSwitchActiveError,
    RoundAbortedError,
    UniverseUnavailableError,
)
from agentfund.core.risk_profiles import RiskProfile, get_risk_profile
from agentfund.core.schemas import (
    Claim,
    Evidence,
    MarketStats,
    NewsItem,
    Position,
    RiskCheckResult,
    TechnicalIndicators,
    UniverseFilter,
    VerificationResult,
)
from agentfund.execution.orders import OrderExecutor, plan_orders
from agentfund.monitoring.notifier import LogNotifier, SafeNotifier
from agentfund.pipeline.artifacts import InMemoryRoundRecorder, RoundArtifact
from agentfund.portfolio.consensus_builder import ConsensusBuilder
from agentfund.portfolio.portfolio_constructor import PortfolioConstructor
from agentfund.portfolio.signal_processor import SignalProcessor
from agentfund.risk.risk_limits import RiskLimitChecker

logger = structlog.get_logger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]

_ALLOWED_TRANSITIONS: dict[MachineState, frozenset[MachineState]] = {
    MachineState.IDLE: frozenset({MachineState.RUNNING}),
    MachineState.RUNNING: frozenset({MachineState.COMPLETED, MachineState.FAILED}),
    MachineState.COMPLETED: frozenset({MachineState.IDLE}),
    MachineState.FAILED: frozenset({MachineState.IDLE}),
    MachineState.KILL_SWITCH_ACTIVE: frozenset(),
}

HISTORY_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# RoundStateMachine
# ---------------------------------------------------------------------------
class RoundStateMachine:
    """Drives decision rounds against injected collaborators.

    Args:
        market_data: Universe and market-stats provider.
        news: News search provider.
        claim_generator: Produces claims per analysis role.
        execution: Execution adapter (positions, orders, emergency close).
        technical: Optional technical-indicator provider.
        fact_store: Optional evidence store (news persisted, evidence read).
        verifier: Claim verifier (defaults to ClaimVerifier).
        risk: Risk service (defaults to RiskLimitChecker).
        recorder: Round recorder (defaults to InMemoryRoundRecorder).
        notifier: Notification sink; always wrapped in SafeNotifier.
        settings: Runtime settings (defaults to the module singleton).
        kill_switch: Kill switch (defaults to one honouring settings).
        sleep: Awaitable sleep, injectable for tests.
        clock: UTC clock, injectable for tests.
    """

    ROLES: tuple[Role, ...] = (Role.FUNDAMENTAL, Role.SENTIMENT, Role.TECHNICAL)

    def __init__(
        self,
        market_data: Any,
        news: Any,
        claim_generator: ClaimGenerator,
        execution: Any,
        *,
        technical: Any = None,
        fact_store: Any = None,
        verifier: Any = None,
        risk: Any = None,
        recorder: Any = None,
        notifier: Any = None,
        settings: Optional[Settings] = None,
        kill_switch: Optional[KillSwitch] = None,
        sleep: Optional[SleepFn] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.market_data = market_data
        self.news = news
        self.claim_generator = claim_generator
        self.execution = execution
        self.technical = technical
        self.fact_store = fact_store
        self.verifier = verifier or ClaimVerifier()
        self.risk = risk or RiskLimitChecker()
        self.recorder = recorder or InMemoryRoundRecorder()
        if isinstance(notifier, SafeNotifier):
            self.notifier = notifier
        else:
            self.notifier = SafeNotifier([notifier] if notifier is not None else [LogNotifier()])
        self.kill_switch = kill_switch or KillSwitch(
            enabled=self.settings.kill_switch_enabled
        )
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or _utcnow

        self.risk_profile: RiskProfile = get_risk_profile(self.settings.risk_profile)
        self.signal_processor = SignalProcessor(
            annual_risk_free_rate=self.settings.annual_risk_free_rate
        )
        self.consensus_builder = ConsensusBuilder(
            conflict_threshold=self.settings.conflict_threshold
        )
        self.portfolio_constructor = PortfolioConstructor(
            correlated_assets=self.settings.correlated_assets,
            annual_risk_free_rate=self.settings.annual_risk_free_rate,
        )
        self.order_executor = OrderExecutor(
            execution,
            pacing_seconds=self.settings.order_pacing_seconds,
            sleep=self._sleep,
        )

        self._state = MachineState.IDLE
        self._current_round_id: Optional[str] = None
        self._rounds_run = 0
        self._rounds_failed = 0
        self.history: deque[RoundArtifact] = deque(maxlen=HISTORY_SIZE)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> MachineState:
        return self._state

    def _transition(self, target: MachineState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise AgentFundError(
                f"Illegal state transition {self._state.value} -> {target.value}"
            )
        self._state = target

    def status(self) -> dict[str, Any]:
        """Snapshot of the machine for health checks and reporting."""
        return {
            "state": self._state.value,
            "round_id": self._current_round_id,
            "kill_switch_active": self.kill_switch.is_active,
            "kill_switch_reason": self.kill_switch.reason,
            "rounds_run": self._rounds_run,
            "rounds_failed": self._rounds_failed,
            "last_status": self.history[-1].status.value if self.history else None,
            "risk_profile": self.risk_profile.name.value,
        }

    # ------------------------------------------------------------------
    # Kill switch
    # ------------------------------------------------------------------
    def trigger_kill_switch(self, reason: str, source: str = "manual") -> None:
        """Set the kill-switch flag; safe to call while a round is running.

        Raises:
            KillSwitchDisabledError: If disabled by configuration.
        """
        self.kill_switch.trigger(reason, source=source)

    async def _engage_kill_switch(self) -> None:
        """Flatten exposure once and enter the absorbing halted state."""
        self._state = MachineState.KILL_SWITCH_ACTIVE
        result = await self.kill_switch.flatten(self.execution, self.notifier)
        logger.critical(
            "round_loop_halted",
            reason=result.reason,
            flattened=result.flattened,
            error=result.error,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def run_forever(self, max_rounds: Optional[int] = None) -> None:
        """Run rounds until the kill switch fires (or ``max_rounds`` ran).

        A failed round is followed by the error cool-down, a round skipped
        for missing data by the short missing-data wait, and a completed
        round by the full round interval. Triggering the kill switch ends the
        wait early. Pending notifications are drained before returning.
        """
        attempted = 0
        logger.info(
            "round_loop_started",
            risk_profile=self.risk_profile.name.value,
            interval_seconds=self.settings.round_interval_seconds,
        )

        while True:
            if self.kill_switch.is_active:
                await self._engage_kill_switch()
                break
            if max_rounds is not None and attempted >= max_rounds:
                break

            attempted += 1
            try:
                artifact = await self.run_round()
            except KillSwitchActiveError:
                continue
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "round_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    cooldown_seconds=self.settings.error_cooldown_seconds,
                )
                wait = self.settings.error_cooldown_seconds
            else:
                wait = (
                    self.settings.missing_data_wait_seconds
                    if artifact.skipped
                    else self.settings.round_interval_seconds
                )

            if self.kill_switch.is_active:
                continue
            if max_rounds is not None and attempted >= max_rounds:
                break
            await self._wait_between_rounds(wait)

        await self.notifier.drain()
        logger.info("round_loop_stopped", rounds_attempted=attempted)

    async def _wait_between_rounds(self, seconds: float) -> None:
        """Sleep ``seconds``, returning early if the kill switch is triggered."""
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        watcher = asyncio.ensure_future(self.kill_switch.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (sleeper, watcher):
                task.cancel()
            await asyncio.gather(sleeper, watcher, return_exceptions=True)

        if watcher in done:
            logger.warning("round_wait_interrupted", reason=self.kill_switch.reason)
        if sleeper in done:
            sleeper.result()

    # ------------------------------------------------------------------
    # Round
    # ------------------------------------------------------------------
    async def run_round(self) -> RoundArtifact:
        """Execute one full round.

        Returns:
            The completed RoundArtifact.

        Raises:
            KillSwitchActiveError: If the kill switch is engaged.
            RoundAbortedError: If any stage fails; the round is recorded and
                reported as failed before this propagates.
        """
        if self.kill_switch.is_active or self._state == MachineState.KILL_SWITCH_ACTIVE:
            raise KillSwitchActiveError("Kill switch is active; no new rounds.")
        if self._state in (MachineState.COMPLETED, MachineState.FAILED):
            self._transition(MachineState.IDLE)

        round_id = str(uuid.uuid4())
        started_at = self._clock()
        cutoff = started_at - timedelta(seconds=self.settings.claim_cutoff_seconds)
        log = logger.bind(round_id=round_id)

        self._transition(MachineState.RUNNING)
        self._current_round_id = round_id
        self._rounds_run += 1
        artifact = RoundArtifact(round_id=round_id, started_at=started_at)
        log.info("round_started", cutoff=cutoff.isoformat())
        await self._record("start_round", round_id, started_at, log=log)

        try:
            await self._run_pipeline(artifact, cutoff, log)
        except RoundAbortedError as exc:
            await self._finish(artifact, RoundStatus.FAILED, log, error=exc)
            raise
        except Exception as exc:
            aborted = RoundAbortedError("pipeline", round_id, exc)
            log.error("stage_failed", stage="pipeline", error=str(exc))
            await self._finish(artifact, RoundStatus.FAILED, log, error=aborted)
            raise aborted from exc

        await self._finish(artifact, RoundStatus.COMPLETED, log)
        return artifact

    async def _run_pipeline(
        self, artifact: RoundArtifact, cutoff: datetime, log: Any
    ) -> None:
        rid = artifact.round_id

        universe, market_stats = await self._run_stage(
            "market_data", artifact, log, lambda: self._fetch_market_data(log)
        )
        artifact.universe = list(market_stats)
        if not market_stats:
            artifact.skipped = True
            log.warning("round_skipped_no_market_data", n_universe=len(universe))
            return
        await self.notifier.round_started(rid, artifact.universe)

        facts, technical_data, evidence = await self._run_stage(
            "evidence",
            artifact,
            log,
            lambda: self._fetch_evidence(artifact.universe, cutoff, log),
        )

        context = RoleContext(
            round_id=rid,
            universe=artifact.universe,
            facts=facts,
            market_stats=market_stats,
            risk_profile=self.risk_profile,
            timestamp=cutoff,
            technical_data=technical_data,
            evidence=evidence,
        )
        claims = await self._run_stage(
            "claims", artifact, log, lambda: self._generate_claims(context, log)
        )

        verification = await self._run_stage(
            "verification",
            artifact,
            log,
            lambda: self._verify(claims, cutoff),
        )
        artifact.claims = list(verification.verified)
        artifact.rejected_claims = list(verification.rejected)
        artifact.risk_violations.extend(verification.violations)
        await self._record("store_claims", rid, artifact.claims, log=log)

        artifact.signals = await self._run_stage(
            "signals",
            artifact,
            log,
            self._sync(
                lambda: self.signal_processor.process_signals(
                    artifact.claims, market_stats, self.risk_profile, technical_data
                )
            ),
        )
        await self._record("store_signals", rid, artifact.signals, log=log)

        artifact.consensus, artifact.conflicts = await self._run_stage(
            "consensus",
            artifact,
            log,
            self._sync(
                lambda: (
                    self.consensus_builder.build_consensus(
                        artifact.signals,
                        self.settings.max_positions,
                        claims=artifact.claims,
                        market_stats=market_stats,
                    ),
                    self.consensus_builder.detect_conflicts(artifact.claims),
                )
            ),
        )
        await self._record("store_consensus", rid, artifact.consensus, log=log)
        await self.notifier.consensus_built(rid, artifact.consensus, artifact.conflicts)

        artifact.target_weights = await self._run_stage(
            "portfolio",
            artifact,
            log,
            self._sync(
                lambda: self.portfolio_constructor.build_target_weights(
                    artifact.signals, self.risk_profile
                )
            ),
        )

        positions, risk_result = await self._run_stage(
            "risk",
            artifact,
            log,
            lambda: self._check_risk(artifact.target_weights, market_stats),
        )
        artifact.risk_ok = risk_result.ok
        artifact.risk_violations.extend(risk_result.violations)
        await self.notifier.risk_assessed(rid, risk_result)

        if not risk_result.ok:
            log.warning(
                "execution_skipped",
                reason="risk_check_failed",
                n_violations=len(risk_result.violations),
            )
        elif self.kill_switch.is_active:
            log.warning("execution_skipped", reason="kill_switch_active")
        else:
            artifact.orders = await self._run_stage(
                "execution",
                artifact,
                log,
                lambda: self._execute(rid, artifact.target_weights, positions, log),
            )
            await self._record("store_orders", rid, artifact.orders, log=log)

        artifact.total_pnl = await self._total_pnl(log)

    # ------------------------------------------------------------------
    # Stage execution wrapper
    # ------------------------------------------------------------------
    async def _run_stage(
        self,
        name: str,
        artifact: RoundArtifact,
        log: Any,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Time a stage; wrap any failure in RoundAbortedError."""
        t0 = time.monotonic()
        try:
            result = await fn()
        except Exception as exc:
            artifact.step_timings[name] = round(time.monotonic() - t0, 3)
            log.error("stage_failed", stage=name, error=str(exc))
            raise RoundAbortedError(name, artifact.round_id, exc) from exc
        artifact.step_timings[name] = round(time.monotonic() - t0, 3)
        log.debug("stage_completed", stage=name, seconds=artifact.step_timings[name])
        return result

    @staticmethod
    def _sync(fn: Callable[[], T]) -> Callable[[], Awaitable[T]]:
        async def _call() -> T:
            return fn()

        return _call

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _fetch_market_data(
        self, log: Any
    ) -> tuple[list[str], dict[str, MarketStats]]:
        filters = UniverseFilter(
            min_volume_24h=self.settings.min_volume_24h,
            max_spread=self.settings.max_spread,
            min_liquidity=self.settings.min_liquidity,
        )
        try:
            universe = list(await self.market_data.get_universe(filters))
        except Exception as exc:
            raise UniverseUnavailableError(f"Universe fetch failed: {exc}") from exc

        results = await asyncio.gather(
            *(self.market_data.get_market_stats(t) for t in universe),
            return_exceptions=True,
        )
        market_stats: dict[str, MarketStats] = {}
        for ticker, result in zip(universe, results):
            if isinstance(result, BaseException):
                log.warning("market_stats_unavailable", ticker=ticker, error=str(result))
            elif result is None:
                log.warning("market_stats_unavailable", ticker=ticker, error="empty")
            else:
                market_stats[ticker] = result

        log.info(
            "market_data_fetched",
            n_universe=len(universe),
            n_with_stats=len(market_stats),
        )
        return universe, market_stats

    async def _fetch_evidence(
        self, universe: Sequence[str], cutoff: datetime, log: Any
    ) -> tuple[list[NewsItem], dict[str, TechnicalIndicators], list[Evidence]]:
        since = cutoff - timedelta(seconds=self.settings.news_lookback_seconds)
        facts, technical_data = await asyncio.gather(
            self.news.search(self.settings.news_query, since, cutoff),
            self._fetch_technical(universe, log),
        )
        facts = list(facts or [])

        evidence: list[Evidence] = []
        if self.fact_store is not None:
            await self.fact_store.put_news(facts)
            results = await asyncio.gather(
                *(self.fact_store.find_evidence(t, since, cutoff) for t in universe),
                return_exceptions=True,
            )
            for ticker, result in zip(universe, results):
                if isinstance(result, BaseException):
                    log.warning("evidence_unavailable", ticker=ticker, error=str(result))
                else:
                    evidence.extend(result or [])

        log.info(
            "evidence_fetched",
            n_news=len(facts),
            n_evidence=len(evidence),
            n_technical=len(technical_data),
        )
        return facts, technical_data, evidence

    async def _fetch_technical(
        self, universe: Sequence[str], log: Any
    ) -> dict[str, TechnicalIndicators]:
        if self.technical is None:
            return {}
        results = await asyncio.gather(
            *(
                self.technical.get_technical_indicators(t, self.settings.technical_timeframe)
                for t in universe
            ),
            return_exceptions=True,
        )
        technical_data: dict[str, TechnicalIndicators] = {}
        for ticker, result in zip(universe, results):
            if isinstance(result, BaseException):
                log.warning("technical_data_unavailable", ticker=ticker, error=str(result))
            elif result is not None:
                technical_data[ticker] = result
        return technical_data

    async def _generate_claims(self, context: RoleContext, log: Any) -> list[Claim]:
        """Run all roles concurrently; fail only if every role fails."""

        async def run(role: Role) -> list[Claim]:
            t0 = time.monotonic()
            claims = list(await self.claim_generator.run_role(role, context))
            elapsed = time.monotonic() - t0
            log.info("role_claims_generated", role=role.value, n_claims=len(claims))
            await self.notifier.claims_generated(
                context.round_id, role.value, claims, elapsed
            )
            return claims

        results = await asyncio.gather(
            *(run(role) for role in self.ROLES), return_exceptions=True
        )

        claims: list[Claim] = []
        errors: list[BaseException] = []
        for role, result in zip(self.ROLES, results):
            if isinstance(result, BaseException):
                errors.append(result)
                log.warning("role_failed", role=role.value, error=str(result))
            else:
                claims.extend(result)

        if errors and len(errors) == len(self.ROLES):
            raise errors[0]
        return claims

    async def _verify(self, claims: Sequence[Claim], cutoff: datetime) -> VerificationResult:
        result = await self.verifier.verify_claims(claims, cutoff)
        return VerificationResult.model_validate(result, from_attributes=True)

    async def _check_risk(
        self, target_weights: Sequence[Any], market_stats: Mapping[str, MarketStats]
    ) -> tuple[list[Position], RiskCheckResult]:
        """Read positions and run the risk service.

        The service may answer with a RiskCheckResult or any ``{ok,
        violations}`` mapping or object; anything else fails the stage.
        """
        positions = list(await self.execution.get_positions())
        result = await self.risk.check_limits(
            target_weights, positions, market_stats, self.risk_profile
        )
        return positions, RiskCheckResult.model_validate(result, from_attributes=True)

    async def _execute(
        self,
        round_id: str,
        target_weights: Sequence[Any],
        positions: Sequence[Position],
        log: Any,
    ) -> list[Any]:
        plans = plan_orders(target_weights, positions, self.settings.rebalance_threshold)
        orders = await self.order_executor.submit(plans, self.kill_switch, logger=log)
        try:
            updated = list(await self.execution.get_positions())
        except Exception as exc:  # noqa: BLE001
            log.warning("positions_unavailable", error=str(exc))
            updated = []
        await self.notifier.orders_executed(round_id, orders, updated)
        return orders

    async def _total_pnl(self, log: Any) -> float:
        try:
            positions = await self.execution.get_positions()
            return float(sum(p.unrealized_pnl + p.realized_pnl for p in positions))
        except Exception as exc:  # noqa: BLE001
            log.warning("pnl_unavailable", error=str(exc))
            return 0.0

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    async def _finish(
        self,
        artifact: RoundArtifact,
        status: RoundStatus,
        log: Any,
        error: Optional[RoundAbortedError] = None,
    ) -> None:
        artifact.status = status
        artifact.finished_at = self._clock()
        if error is not None:
            artifact.error = str(error)
            artifact.failed_stage = error.stage
            self._rounds_failed += 1
        self._transition(
            MachineState.COMPLETED if status == RoundStatus.COMPLETED else MachineState.FAILED
        )
        self.history.append(artifact)

        await self._record(
            "end_round",
            artifact.round_id,
            status,
            len(artifact.claims),
            len(artifact.orders),
            artifact.total_pnl,
            log=log,
        )
        if error is not None:
            log.error("round_failed", stage=error.stage, error=str(error.cause))
            await self.notifier.round_failed(artifact.round_id, str(error))
        else:
            log.info("round_completed", **artifact.summary())
            await self.notifier.round_completed(artifact)

    async def _record(self, method: str, *args: Any, log: Any) -> None:
        """Best-effort write to the round recorder."""
        try:
            await getattr(self.recorder, method)(*args)
        except Exception as exc:  # noqa: BLE001
            log.warning("recorder_failed", method=method, error=str(exc))
