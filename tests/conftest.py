"""Root pytest configuration and shared fixtures.

Provides common test fixtures used across all test modules:
- make_claim / make_stats / make_settings: callables building inputs
- fake_market_data, fake_news, fake_technical, fake_claim_generator,
  fake_execution: callables building in-memory collaborator fakes
- notifier: notification sink recording every call
- recording_sleep: awaitable sleep recording requested delays
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import pytest

from agentfund.core.config import Settings
from agentfund.core.enums import Role
from agentfund.core.schemas import (
    Claim,
    MarketStats,
    NewsItem,
    OrderSpec,
    Position,
    TechnicalIndicators,
)

_claim_ids = itertools.count(1)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def _build_claim(
    ticker: str,
    role: Role | str,
    call: str = "BUY",
    confidence: float = 0.7,
    risk_flags: Optional[list[str]] = None,
    signals: Optional[dict[str, float]] = None,
    **kwargs: Any,
) -> Claim:
    """Build a Claim with a unique id."""
    return Claim(
        id=kwargs.pop("id", f"claim-{next(_claim_ids)}"),
        ticker=ticker,
        role=Role(role),
        call=call,
        confidence=confidence,
        risk_flags=risk_flags or [],
        signals=signals or {},
        **kwargs,
    )


def _build_stats(
    symbol: str,
    volume_24h: float = 10_000_000.0,
    price_change_24h: float = 0.0,
    volume_change_24h: float = 0.0,
    spread: float = 0.1,
) -> MarketStats:
    return MarketStats(
        symbol=symbol,
        volume_24h=volume_24h,
        price_change_24h=price_change_24h,
        volume_change_24h=volume_change_24h,
        spread=spread,
    )


def _build_settings(**overrides: Any) -> Settings:
    """Settings with test-friendly cadence; overrides win."""
    values: dict[str, Any] = {
        "round_interval_seconds": 3600.0,
        "error_cooldown_seconds": 300.0,
        "missing_data_wait_seconds": 5.0,
        "order_pacing_seconds": 0.0,
        "telegram_bot_token": "",
        "telegram_chat_id": "",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------
class FakeMarketData:
    """Universe + market stats from a dict; optional failures."""

    def __init__(
        self,
        stats: dict[str, MarketStats],
        universe: Optional[list[str]] = None,
        fail_universe: bool = False,
        failing_tickers: Iterable[str] = (),
    ) -> None:
        self.stats = stats
        self.universe = universe if universe is not None else list(stats)
        self.fail_universe = fail_universe
        self.failing_tickers = set(failing_tickers)
        self.universe_calls = 0

    async def get_universe(self, filters):
        self.universe_calls += 1
        if self.fail_universe:
            raise ConnectionError("universe endpoint down")
        return list(self.universe)

    async def get_market_stats(self, ticker):
        if ticker in self.failing_tickers:
            raise TimeoutError(f"stats timeout for {ticker}")
        return self.stats.get(ticker)


class FakeNews:
    def __init__(self, items: Optional[list[NewsItem]] = None, fail: bool = False) -> None:
        self.items = items or []
        self.fail = fail
        self.queries: list[tuple[str, datetime, datetime]] = []

    async def search(self, query, start, end):
        self.queries.append((query, start, end))
        if self.fail:
            raise ConnectionError("news provider down")
        return list(self.items)


class FakeTechnical:
    def __init__(
        self,
        data: Optional[dict[str, TechnicalIndicators]] = None,
        failing_tickers: Iterable[str] = (),
    ) -> None:
        self.data = data or {}
        self.failing_tickers = set(failing_tickers)

    async def get_technical_indicators(self, ticker, timeframe):
        if ticker in self.failing_tickers:
            raise TimeoutError(f"indicators timeout for {ticker}")
        return self.data.get(ticker)


class FakeClaimGenerator:
    """Returns canned claims per role; selected roles raise."""

    def __init__(
        self,
        claims: Iterable[Claim] = (),
        failing_roles: Iterable[Role] = (),
    ) -> None:
        self.claims = list(claims)
        self.failing_roles = set(failing_roles)
        self.contexts: list[Any] = []

    async def run_role(self, role, context):
        self.contexts.append(context)
        if role in self.failing_roles:
            raise RuntimeError(f"{role.value} generator crashed")
        return [c for c in self.claims if c.role == role]


class FakeExecution:
    """Venue fake recording orders and emergency closes."""

    def __init__(
        self,
        positions: Optional[list[Position]] = None,
        failing_symbols: Iterable[str] = (),
        fail_positions: bool = False,
        fail_emergency: bool = False,
    ) -> None:
        self.positions = positions or []
        self.failing_symbols = set(failing_symbols)
        self.fail_positions = fail_positions
        self.fail_emergency = fail_emergency
        self.placed: list[OrderSpec] = []
        self.emergency_calls = 0
        self.on_place: Any = None

    async def get_positions(self):
        if self.fail_positions:
            raise ConnectionError("venue unreachable")
        return list(self.positions)

    async def place_order(self, spec):
        if self.on_place is not None:
            self.on_place(spec)
        if spec.symbol in self.failing_symbols:
            raise RuntimeError(f"order rejected for {spec.symbol}")
        self.placed.append(spec)
        return f"order-{len(self.placed)}"

    async def emergency_close(self):
        self.emergency_calls += 1
        if self.fail_emergency:
            raise RuntimeError("venue refused emergency close")


class RecordingNotifier:
    """Notification sink recording (method, args) tuples."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def round_started(self, *args):
        self.calls.append(("round_started", args))

    async def claims_generated(self, *args):
        self.calls.append(("claims_generated", args))

    async def consensus_built(self, *args):
        self.calls.append(("consensus_built", args))

    async def risk_assessed(self, *args):
        self.calls.append(("risk_assessed", args))

    async def orders_executed(self, *args):
        self.calls.append(("orders_executed", args))

    async def round_completed(self, *args):
        self.calls.append(("round_completed", args))

    async def round_failed(self, *args):
        self.calls.append(("round_failed", args))

    async def emergency_alert(self, *args):
        self.calls.append(("emergency_alert", args))


class RecordingSleep:
    """Injectable async sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def test_settings() -> Settings:
    return _build_settings()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_claim() -> Any:
    """Return a callable building a Claim with a unique id.

    Usage::

        def test_something(make_claim):
            claim = make_claim("BTC", Role.FUNDAMENTAL, "BUY", confidence=0.8)
    """
    return _build_claim


@pytest.fixture
def make_stats() -> Any:
    """Return a callable building MarketStats (10M volume, flat price)."""
    return _build_stats


@pytest.fixture
def make_settings() -> Any:
    """Return a callable building Settings with test cadence + overrides."""
    return _build_settings


@pytest.fixture
def fake_market_data() -> type[FakeMarketData]:
    return FakeMarketData


@pytest.fixture
def fake_news() -> type[FakeNews]:
    return FakeNews


@pytest.fixture
def fake_technical() -> type[FakeTechnical]:
    return FakeTechnical


@pytest.fixture
def fake_claim_generator() -> type[FakeClaimGenerator]:
    return FakeClaimGenerator


@pytest.fixture
def fake_execution() -> type[FakeExecution]:
    return FakeExecution
