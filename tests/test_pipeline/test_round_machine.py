"""Tests for RoundStateMachine rounds, loop resilience and the kill switch.

Covers:
- Full round: claims -> signals -> consensus -> targets -> risk -> orders
- Skipped round when no market data is available
- A throwing collaborator in any single stage fails the round, not the loop
- Partial failures (one role, one ticker) degrade instead of failing
- Notifications never hold up a round; mapping results from services are accepted
- Kill switch: halt, one-shot flatten, skipped orders, interrupted wait,
  absorbing state
- State transitions and status reporting
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from agentfund.core.enums import (
    MachineState,
    Recommendation,
    Role,
    RoundStatus,
    Severity,
    Side,
)
from agentfund.core.exceptions import (
    AgentFundError,
    KillSwitchActiveError,
    KillSwitchDisabledError,
    RoundAbortedError,
    UniverseUnavailableError,
)
from agentfund.core.schemas import (
    MarketEvidence,
    Position,
    RiskCheckResult,
    RiskViolation,
    TechnicalIndicators,
)
from agentfund.monitoring.notifier import SafeNotifier
from agentfund.pipeline.artifacts import InMemoryRoundRecorder
from agentfund.pipeline.round_machine import RoundStateMachine

ROLES = (Role.FUNDAMENTAL, Role.SENTIMENT, Role.TECHNICAL)
TICKERS = ("BTC", "XRP")


# ---------------------------------------------------------------------------
# Collaborator doubles used by single tests
# ---------------------------------------------------------------------------
class _ExplodingVerifier:
    async def verify_claims(self, claims, cutoff):
        raise RuntimeError("verifier crashed")


class _ExplodingRisk:
    async def check_limits(self, target_weights, positions, market_stats, risk_profile):
        raise RuntimeError("risk service unavailable")


class _RejectingRisk:
    async def check_limits(self, target_weights, positions, market_stats, risk_profile):
        return RiskCheckResult(
            ok=False,
            violations=[
                RiskViolation(kind="exposure", severity=Severity.CRITICAL, detail="too much")
            ],
        )


class _MappingRisk:
    """Answers with a plain ``{ok, violations}`` mapping."""

    async def check_limits(self, target_weights, positions, market_stats, risk_profile):
        return {"ok": True, "violations": []}


class _MalformedRisk:
    async def check_limits(self, target_weights, positions, market_stats, risk_profile):
        return "looks fine to me"


class _MappingVerifier:
    async def verify_claims(self, claims, cutoff):
        return {"verified": list(claims), "rejected": [], "violations": []}


class _GatedSink:
    """Sink whose every call blocks until ``gate`` is set."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.calls = []

    def __getattr__(self, name):
        async def _wait(*args):
            await self.gate.wait()
            self.calls.append(name)

        return _wait


class _ExplodingRecorder:
    def __getattr__(self, name):
        async def _fail(*args):
            raise RuntimeError("database down")

        return _fail


class _ExplodingSink:
    def __getattr__(self, name):
        async def _fail(*args):
            raise RuntimeError("chat unreachable")

        return _fail


class _FactStore:
    def __init__(self, evidence, failing_tickers=()):
        self.evidence = evidence
        self.failing_tickers = set(failing_tickers)
        self.stored_news = []

    async def put_news(self, items):
        self.stored_news.extend(items)

    async def put_evidence(self, items):
        pass

    async def find_evidence(self, ticker, since, until):
        if ticker in self.failing_tickers:
            raise TimeoutError("fact store timeout")
        return [e for e in self.evidence if e.ticker == ticker]


def _boom(*args, **kwargs):
    raise RuntimeError("stage exploded")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def bullish_claims(make_claim):
    return [make_claim(t, role, "BUY", confidence=0.8) for t in TICKERS for role in ROLES]


@pytest.fixture
def market(fake_market_data, make_stats):
    return fake_market_data(
        {t: make_stats(t, price_change_24h=2.0, volume_change_24h=5.0) for t in TICKERS}
    )


@pytest.fixture
def build_machine(
    make_settings,
    recording_sleep,
    notifier,
    market,
    bullish_claims,
    fake_news,
    fake_claim_generator,
    fake_execution,
):
    """Return a callable building a machine; keyword overrides replace defaults.

    ``settings`` may be passed as a dict of Settings overrides.
    """

    def _build(**overrides) -> RoundStateMachine:
        settings = make_settings(**overrides.pop("settings", {}))
        kwargs = {
            "market_data": market,
            "news": fake_news(),
            "claim_generator": fake_claim_generator(bullish_claims),
            "execution": fake_execution(),
            "notifier": notifier,
            "recorder": InMemoryRoundRecorder(),
            "settings": settings,
            "sleep": recording_sleep,
        }
        kwargs.update(overrides)
        return RoundStateMachine(**kwargs)

    return _build


# ---------------------------------------------------------------------------
# Tests: full round
# ---------------------------------------------------------------------------
class TestFullRound:
    @pytest.mark.asyncio
    async def test_round_places_orders(self, build_machine, notifier, recording_sleep):
        machine = build_machine(settings={"order_pacing_seconds": 1.0})

        artifact = await machine.run_round()

        assert artifact.status == RoundStatus.COMPLETED
        assert artifact.skipped is False
        assert artifact.universe == list(TICKERS)
        assert len(artifact.claims) == 6
        assert artifact.rejected_claims == []
        assert all(s.recommendation == Recommendation.BUY for s in artifact.signals)
        assert [r.ticker for r in artifact.consensus] == list(TICKERS)
        assert all(r.coverage == pytest.approx(1.0) for r in artifact.consensus)

        # equal half-Kelly sizes normalize to 0.5 each, clipped to the 0.2 cap
        assert [(t.symbol, t.side) for t in artifact.target_weights] == [
            ("BTC", Side.BUY),
            ("XRP", Side.BUY),
        ]
        assert all(t.weight == pytest.approx(0.2) for t in artifact.target_weights)

        assert artifact.risk_ok is True
        assert {v.kind for v in artifact.risk_violations} == {"max_position"}
        assert all(v.severity == Severity.WARNING for v in artifact.risk_violations)

        assert [o.status for o in artifact.orders] == ["submitted", "submitted"]
        assert [s.symbol for s in machine.execution.placed] == list(TICKERS)
        assert recording_sleep.calls == [1.0]

        assert set(artifact.step_timings) == {
            "market_data",
            "evidence",
            "claims",
            "verification",
            "signals",
            "consensus",
            "portfolio",
            "risk",
            "execution",
        }

    @pytest.mark.asyncio
    async def test_notifications_in_stage_order(self, build_machine, notifier):
        machine = build_machine()
        await machine.run_round()
        await machine.notifier.drain()

        names = notifier.names()
        assert names[0] == "round_started"
        assert names[1:4] == ["claims_generated"] * 3
        assert names[4:] == [
            "consensus_built",
            "risk_assessed",
            "orders_executed",
            "round_completed",
        ]

    @pytest.mark.asyncio
    async def test_round_is_recorded(self, build_machine):
        machine = build_machine()
        artifact = await machine.run_round()

        record = machine.recorder.rounds[artifact.round_id]
        assert record["status"] == RoundStatus.COMPLETED
        assert record["claims_count"] == 6
        assert record["orders_count"] == 2
        assert len(machine.recorder.claims[artifact.round_id]) == 6
        assert len(machine.recorder.signals[artifact.round_id]) == 2
        assert len(machine.recorder.orders[artifact.round_id]) == 2

    @pytest.mark.asyncio
    async def test_round_id_and_cutoff_passed_explicitly(
        self, build_machine, fake_news, fixed_now
    ):
        news = fake_news()
        machine = build_machine(news=news, clock=lambda: fixed_now)

        artifact = await machine.run_round()

        cutoff = fixed_now - timedelta(seconds=60)
        context = machine.claim_generator.contexts[0]
        assert context.round_id == artifact.round_id
        assert context.timestamp == cutoff
        assert news.queries == [
            ("crypto bitcoin ethereum", cutoff - timedelta(hours=1), cutoff)
        ]

    @pytest.mark.asyncio
    async def test_risk_rejection_blocks_execution(self, build_machine, notifier):
        machine = build_machine(risk=_RejectingRisk())

        artifact = await machine.run_round()
        await machine.notifier.drain()

        assert artifact.status == RoundStatus.COMPLETED
        assert artifact.risk_ok is False
        assert artifact.orders == []
        assert machine.execution.placed == []
        assert "orders_executed" not in notifier.names()

    @pytest.mark.asyncio
    async def test_slow_sink_does_not_hold_up_round(self, build_machine, notifier):
        sink = _GatedSink()
        machine = build_machine(notifier=SafeNotifier([sink, notifier]))

        artifact = await asyncio.wait_for(machine.run_round(), timeout=5)

        assert artifact.status == RoundStatus.COMPLETED
        assert len(artifact.orders) == 2
        assert sink.calls == []
        assert notifier.names() == []
        assert machine.notifier.pending > 0

        sink.gate.set()
        await machine.notifier.drain()

        assert machine.notifier.pending == 0
        assert sink.calls.count("round_completed") == 1
        assert notifier.names()[-1] == "round_completed"

    @pytest.mark.asyncio
    async def test_mapping_results_accepted(self, build_machine):
        machine = build_machine(risk=_MappingRisk(), verifier=_MappingVerifier())

        await machine.run_forever(max_rounds=2)

        assert [a.status for a in machine.history] == [RoundStatus.COMPLETED] * 2
        assert all(a.risk_ok is True for a in machine.history)
        assert all(len(a.claims) == 6 for a in machine.history)
        assert len(machine.execution.placed) == 4

    @pytest.mark.asyncio
    async def test_pnl_from_positions(self, build_machine, fake_execution):
        execution = fake_execution(
            positions=[
                Position(symbol="BTC", quantity=1, avg_price=100, unrealized_pnl=5, realized_pnl=2),
                Position(symbol="ETH", quantity=2, avg_price=50, unrealized_pnl=-1),
            ]
        )
        machine = build_machine(execution=execution)
        artifact = await machine.run_round()
        assert artifact.total_pnl == pytest.approx(6.0)


# ---------------------------------------------------------------------------
# Tests: degraded inputs
# ---------------------------------------------------------------------------
class TestDegradedInputs:
    @pytest.mark.asyncio
    async def test_no_market_data_skips_round(
        self, build_machine, fake_market_data, notifier, recording_sleep
    ):
        machine = build_machine(market_data=fake_market_data({}, universe=["BTC", "ETH"]))

        await machine.run_forever(max_rounds=2)

        assert len(machine.history) == 2
        assert all(a.skipped for a in machine.history)
        assert all(a.status == RoundStatus.COMPLETED for a in machine.history)
        assert machine.claim_generator.contexts == []
        assert "round_started" not in notifier.names()
        assert recording_sleep.calls == [5.0]

    @pytest.mark.asyncio
    async def test_failing_ticker_is_dropped(self, build_machine, market):
        market.failing_tickers = {"XRP"}
        machine = build_machine()

        artifact = await machine.run_round()

        assert artifact.status == RoundStatus.COMPLETED
        assert artifact.universe == ["BTC"]
        assert [s.ticker for s in artifact.signals] == ["BTC"]

    @pytest.mark.asyncio
    async def test_single_role_failure_tolerated(
        self, build_machine, fake_claim_generator, bullish_claims, notifier
    ):
        machine = build_machine(
            claim_generator=fake_claim_generator(bullish_claims, failing_roles=[Role.SENTIMENT])
        )

        artifact = await machine.run_round()
        await machine.notifier.drain()

        assert artifact.status == RoundStatus.COMPLETED
        assert {c.role for c in artifact.claims} == {Role.FUNDAMENTAL, Role.TECHNICAL}
        assert notifier.names().count("claims_generated") == 2

    @pytest.mark.asyncio
    async def test_evidence_and_indicators_reach_generator(
        self, build_machine, fake_technical, fixed_now
    ):
        evidence = MarketEvidence(
            id="m1",
            ticker="BTC",
            source="binance",
            relevance=0.9,
            observed_at=fixed_now - timedelta(minutes=30),
        )
        store = _FactStore([evidence], failing_tickers=["XRP"])
        technical = fake_technical({"BTC": TechnicalIndicators(RSI=25.0)}, failing_tickers=["XRP"])
        machine = build_machine(fact_store=store, technical=technical)

        artifact = await machine.run_round()

        context = machine.claim_generator.contexts[0]
        assert artifact.status == RoundStatus.COMPLETED
        assert list(context.evidence) == [evidence]
        assert set(context.technical_data) == {"BTC"}
        assert context.technical_data["BTC"].rsi == 25.0

    @pytest.mark.asyncio
    async def test_recorder_and_notifier_failures_swallowed(self, build_machine):
        machine = build_machine(recorder=_ExplodingRecorder(), notifier=_ExplodingSink())

        artifact = await machine.run_round()

        assert artifact.status == RoundStatus.COMPLETED
        assert len(artifact.orders) == 2


# ---------------------------------------------------------------------------
# Tests: loop resilience
# ---------------------------------------------------------------------------
class TestLoopResilience:
    async def _assert_loop_survives(self, machine, stage, recording_sleep, notifier):
        await machine.run_forever(max_rounds=2)

        assert len(machine.history) == 2
        assert all(a.status == RoundStatus.FAILED for a in machine.history)
        assert all(a.failed_stage == stage for a in machine.history)
        assert recording_sleep.calls == [300.0]
        assert notifier.names().count("round_failed") == 2
        assert machine.state == MachineState.FAILED
        assert machine.status()["rounds_failed"] == 2

    @pytest.mark.asyncio
    async def test_universe_failure(
        self, build_machine, market, recording_sleep, notifier
    ):
        market.fail_universe = True
        machine = build_machine()
        await self._assert_loop_survives(machine, "market_data", recording_sleep, notifier)
        assert market.universe_calls == 2
        assert isinstance(machine.history[0].error, str)

    @pytest.mark.asyncio
    async def test_news_failure(self, build_machine, fake_news, recording_sleep, notifier):
        machine = build_machine(news=fake_news(fail=True))
        await self._assert_loop_survives(machine, "evidence", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_all_roles_fail(
        self, build_machine, fake_claim_generator, recording_sleep, notifier
    ):
        machine = build_machine(claim_generator=fake_claim_generator(failing_roles=ROLES))
        await self._assert_loop_survives(machine, "claims", recording_sleep, notifier)
        assert len(machine.claim_generator.contexts) == 6

    @pytest.mark.asyncio
    async def test_verifier_failure(self, build_machine, recording_sleep, notifier):
        machine = build_machine(verifier=_ExplodingVerifier())
        await self._assert_loop_survives(machine, "verification", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_signal_failure(self, build_machine, recording_sleep, notifier):
        machine = build_machine()
        machine.signal_processor.process_signals = _boom
        await self._assert_loop_survives(machine, "signals", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_consensus_failure(self, build_machine, recording_sleep, notifier):
        machine = build_machine()
        machine.consensus_builder.detect_conflicts = _boom
        await self._assert_loop_survives(machine, "consensus", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_portfolio_failure(self, build_machine, recording_sleep, notifier):
        machine = build_machine()
        machine.portfolio_constructor.build_target_weights = _boom
        await self._assert_loop_survives(machine, "portfolio", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_risk_failure(self, build_machine, recording_sleep, notifier):
        machine = build_machine(risk=_ExplodingRisk())
        await self._assert_loop_survives(machine, "risk", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_positions_failure(
        self, build_machine, fake_execution, recording_sleep, notifier
    ):
        machine = build_machine(execution=fake_execution(fail_positions=True))
        await self._assert_loop_survives(machine, "risk", recording_sleep, notifier)

    @pytest.mark.asyncio
    async def test_malformed_risk_result(
        self, build_machine, market, recording_sleep, notifier
    ):
        machine = build_machine(risk=_MalformedRisk())
        await self._assert_loop_survives(machine, "risk", recording_sleep, notifier)
        assert market.universe_calls == 2
        statuses = [r["status"] for r in machine.recorder.rounds.values()]
        assert statuses == [RoundStatus.FAILED, RoundStatus.FAILED]

    @pytest.mark.asyncio
    async def test_error_outside_a_stage_finishes_round(
        self, build_machine, market, recording_sleep, notifier
    ):
        machine = build_machine()

        async def broken_pnl(log):
            raise RuntimeError("pnl bookkeeping crashed")

        machine._total_pnl = broken_pnl

        await self._assert_loop_survives(machine, "pipeline", recording_sleep, notifier)
        assert market.universe_calls == 2
        assert "pnl bookkeeping crashed" in machine.history[1].error

    @pytest.mark.asyncio
    async def test_failure_then_recovery(self, build_machine, market, recording_sleep):
        calls = {"n": 0}
        original = market.get_universe

        async def flaky(filters):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("transient")
            return await original(filters)

        market.get_universe = flaky
        machine = build_machine()

        await machine.run_forever(max_rounds=3)

        assert [a.status for a in machine.history] == [
            RoundStatus.FAILED,
            RoundStatus.COMPLETED,
            RoundStatus.COMPLETED,
        ]
        assert recording_sleep.calls == [300.0, 3600.0]

    @pytest.mark.asyncio
    async def test_run_round_raises_wrapped_error(self, build_machine, market):
        market.fail_universe = True
        machine = build_machine()

        with pytest.raises(RoundAbortedError) as excinfo:
            await machine.run_round()

        assert excinfo.value.stage == "market_data"
        assert isinstance(excinfo.value.cause, UniverseUnavailableError)
        assert machine.recorder.rounds[excinfo.value.round_id]["status"] == RoundStatus.FAILED


# ---------------------------------------------------------------------------
# Tests: kill switch
# ---------------------------------------------------------------------------
class TestKillSwitch:
    @pytest.mark.asyncio
    async def test_trigger_before_start_halts_and_flattens(
        self, build_machine, market, notifier
    ):
        machine = build_machine()
        machine.trigger_kill_switch("operator stop")

        await machine.run_forever()

        assert machine.state == MachineState.KILL_SWITCH_ACTIVE
        assert market.universe_calls == 0
        assert machine.execution.emergency_calls == 1
        assert notifier.names() == ["emergency_alert"]
        assert machine.kill_switch.result.flattened is True

    @pytest.mark.asyncio
    async def test_trigger_mid_round_skips_remaining_orders(
        self, build_machine, market, recording_sleep
    ):
        machine = build_machine()
        machine.execution.on_place = lambda spec: machine.trigger_kill_switch(
            "venue anomaly", source="internal"
        )

        await machine.run_forever(max_rounds=5)

        [artifact] = machine.history
        assert [o.status for o in artifact.orders] == ["submitted", "skipped"]
        assert len(machine.execution.placed) == 1
        assert machine.execution.emergency_calls == 1
        assert market.universe_calls == 1
        # halted without waiting out the round interval
        assert recording_sleep.calls == []
        assert machine.state == MachineState.KILL_SWITCH_ACTIVE

    @pytest.mark.asyncio
    async def test_trigger_during_wait_ends_wait(self, build_machine, market):
        requested = []

        async def hanging_sleep(seconds):
            requested.append(seconds)
            machine.trigger_kill_switch("operator stop")
            await asyncio.Event().wait()

        machine = build_machine(sleep=hanging_sleep)

        await asyncio.wait_for(machine.run_forever(), timeout=5)

        assert requested == [3600.0]
        assert [a.status for a in machine.history] == [RoundStatus.COMPLETED]
        assert market.universe_calls == 1
        assert machine.execution.emergency_calls == 1
        assert machine.state == MachineState.KILL_SWITCH_ACTIVE

    @pytest.mark.asyncio
    async def test_flatten_failure_reported(self, build_machine, fake_execution, notifier):
        machine = build_machine(execution=fake_execution(fail_emergency=True))
        machine.trigger_kill_switch("drawdown")

        await machine.run_forever()

        result = machine.kill_switch.result
        assert result.flattened is False
        assert "refused" in result.error
        assert notifier.names() == ["emergency_alert", "emergency_alert"]
        assert machine.state == MachineState.KILL_SWITCH_ACTIVE

    @pytest.mark.asyncio
    async def test_no_rounds_after_halt(self, build_machine):
        machine = build_machine()
        machine.trigger_kill_switch("stop")
        await machine.run_forever()

        with pytest.raises(KillSwitchActiveError):
            await machine.run_round()
        await machine.run_forever()
        assert machine.execution.emergency_calls == 1

    def test_disabled_by_configuration(self, build_machine):
        machine = build_machine(settings={"kill_switch_enabled": False})
        with pytest.raises(KillSwitchDisabledError):
            machine.trigger_kill_switch("stop")
        assert machine.status()["kill_switch_active"] is False


# ---------------------------------------------------------------------------
# Tests: state
# ---------------------------------------------------------------------------
class TestState:
    def test_initial_status(self, build_machine):
        status = build_machine().status()
        assert status == {
            "state": "IDLE",
            "round_id": None,
            "kill_switch_active": False,
            "kill_switch_reason": None,
            "rounds_run": 0,
            "rounds_failed": 0,
            "last_status": None,
            "risk_profile": "neutral",
        }

    def test_illegal_transition(self, build_machine):
        machine = build_machine()
        with pytest.raises(AgentFundError, match="Illegal state transition"):
            machine._transition(MachineState.COMPLETED)

    @pytest.mark.asyncio
    async def test_consecutive_rounds_cycle_through_idle(self, build_machine):
        machine = build_machine()
        first = await machine.run_round()
        second = await machine.run_round()

        assert first.round_id != second.round_id
        assert machine.state == MachineState.COMPLETED
        status = machine.status()
        assert status["rounds_run"] == 2
        assert status["round_id"] == second.round_id
        assert status["last_status"] == "completed"

    @pytest.mark.asyncio
    async def test_risk_profile_from_settings(self, build_machine):
        machine = build_machine(settings={"risk_profile": "averse"})
        assert machine.risk_profile.max_positions == 5
        artifact = await machine.run_round()
        # averse caps every weight at 0.15
        assert all(t.weight <= 0.15 + 1e-12 for t in artifact.target_weights)
