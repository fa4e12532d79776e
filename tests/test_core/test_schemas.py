"""Tests for boundary models: claims, evidence union and indicators."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from agentfund.core.enums import Direction, Role, Side
from agentfund.core.schemas import (
    Claim,
    Evidence,
    MarketEvidence,
    NewsEvidence,
    OrderSpec,
    TechEvidence,
    TechnicalIndicators,
)

_TS = datetime(2025, 3, 1, 11, 0, tzinfo=timezone.utc)


class TestClaim:
    def test_sign_from_call(self, make_claim):
        assert make_claim("X", Role.FUNDAMENTAL, "buy").sign == 1
        assert make_claim("X", Role.FUNDAMENTAL, " SELL ").sign == -1
        assert make_claim("X", Role.FUNDAMENTAL, "HOLD").sign == 0

    def test_sign_falls_back_to_direction(self, make_claim):
        claim = make_claim("X", Role.SENTIMENT, "accumulate", direction=Direction.BEARISH)
        assert claim.sign == -1
        assert make_claim("X", Role.SENTIMENT, "accumulate").sign == 0

    def test_frozen(self, make_claim):
        claim = make_claim("X", Role.TECHNICAL)
        with pytest.raises(ValidationError):
            claim.confidence = 0.1

    def test_evidence_parsed_by_kind(self):
        claim = Claim.model_validate(
            {
                "id": "c1",
                "ticker": "BTC",
                "role": "sentiment",
                "call": "BUY",
                "confidence": 0.7,
                "evidence": [
                    {
                        "kind": "news",
                        "id": "e1",
                        "ticker": "BTC",
                        "source": "coindesk.com",
                        "relevance": 0.8,
                        "published_at": _TS.isoformat(),
                    },
                    {
                        "kind": "tech",
                        "id": "e2",
                        "ticker": "BTC",
                        "source": "indicators",
                        "relevance": 0.6,
                        "observed_at": _TS.isoformat(),
                        "indicator": "RSI",
                    },
                ],
            }
        )
        news, tech = claim.evidence
        assert isinstance(news, NewsEvidence)
        assert isinstance(tech, TechEvidence)
        assert news.timestamp == _TS
        assert tech.timestamp == _TS


class TestEvidence:
    def test_unknown_kind_rejected(self):
        adapter = TypeAdapter(Evidence)
        with pytest.raises(ValidationError):
            adapter.validate_python(
                {"kind": "rumour", "id": "e", "ticker": "X", "source": "s", "relevance": 0.5}
            )

    def test_market_variant_requires_observed_at(self):
        with pytest.raises(ValidationError):
            MarketEvidence(id="e", ticker="X", source="binance", relevance=0.5)

    def test_relevance_bounds(self):
        with pytest.raises(ValidationError):
            MarketEvidence(
                id="e", ticker="X", source="binance", relevance=1.5, observed_at=_TS
            )


class TestTechnicalIndicators:
    def test_provider_aliases(self):
        ind = TechnicalIndicators.model_validate(
            {"RSI": 55.0, "MACD.macd": 12.5, "MACD.signal": 10.0, "ADX": 20.0, "AO": -3.0, "CCI20": 80.0}
        )
        assert ind.rsi == 55.0
        assert ind.macd == 12.5
        assert ind.macd_signal == 10.0
        assert ind.adx == 20.0
        assert ind.awesome_oscillator == -3.0
        assert ind.model_extra == {"CCI20": 80.0}

    def test_field_names_accepted(self):
        assert TechnicalIndicators(rsi=40.0).rsi == 40.0


class TestOrderSpec:
    def test_hold_side_rejected(self):
        with pytest.raises(ValidationError):
            OrderSpec(symbol="BTC", side=Side.HOLD, weight=0.1)

    def test_weight_bounds(self):
        with pytest.raises(ValidationError):
            OrderSpec(symbol="BTC", side=Side.BUY, weight=1.2)
