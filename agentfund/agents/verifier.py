"""Claim verification against an evidence freshness / relevance cutoff.

ClaimVerifier gates the fusion pipeline. Critical violations reject a claim:
- confidence outside [0, 1]
- evidence observed after the cutoff (look-ahead)
- average evidence relevance below ``min_relevance``

Warnings are recorded but the claim is kept:
- claim produced more than 60 s after the cutoff
- evidence older than ``max_evidence_age`` at the cutoff
- evidence from a source outside the per-kind whitelist
- confidence above 0.95
- more than 3 risk flags

Verification never raises on bad claims; it reports them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping, Optional, Sequence

import structlog

from agentfund.core.enums import EvidenceKind, Severity
from agentfund.core.schemas import Claim, RiskViolation, VerificationResult

log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_SOURCE_WHITELIST: Mapping[EvidenceKind, tuple[str, ...]] = {
    EvidenceKind.NEWS: (
        "coindesk.com",
        "cointelegraph.com",
        "bitcoin.com",
        "decrypt.co",
        "theblock.co",
        "reuters.com",
        "bloomberg.com",
        "cnbc.com",
        "wsj.com",
    ),
    EvidenceKind.MARKET: ("binance",),
    EvidenceKind.TECH: ("indicators", "technical-analysis"),
}

CLAIM_TIMESTAMP_TOLERANCE = timedelta(seconds=60)
SUSPICIOUS_CONFIDENCE = 0.95
MAX_RISK_FLAGS = 3


class ClaimVerifier:
    """Default claim verifier.

    Args:
        min_relevance: Minimum average evidence relevance for a claim.
        max_evidence_age: Age at the cutoff beyond which evidence is stale.
        source_whitelist: Evidence kind -> accepted source substrings.
    """

    def __init__(
        self,
        min_relevance: float = 0.3,
        max_evidence_age: timedelta = timedelta(hours=24),
        source_whitelist: Optional[Mapping[EvidenceKind, Sequence[str]]] = None,
    ) -> None:
        self.min_relevance = min_relevance
        self.max_evidence_age = max_evidence_age
        self.source_whitelist = (
            source_whitelist if source_whitelist is not None else DEFAULT_SOURCE_WHITELIST
        )

    async def verify_claims(
        self, claims: Sequence[Claim], cutoff: datetime
    ) -> VerificationResult:
        """Split claims into verified and rejected sets.

        Args:
            claims: Claims produced this round.
            cutoff: Evidence cutoff timestamp (round start minus a margin).

        Returns:
            VerificationResult with every violation found, warnings included.
        """
        verified: list[Claim] = []
        rejected: list[Claim] = []
        violations: list[RiskViolation] = []

        for claim in claims:
            found = self.check_claim(claim, cutoff)
            violations.extend(found)
            if any(v.severity == Severity.CRITICAL for v in found):
                rejected.append(claim)
            else:
                verified.append(claim)

        log.info(
            "claims_verified",
            n_claims=len(claims),
            n_verified=len(verified),
            n_rejected=len(rejected),
            n_violations=len(violations),
        )
        return VerificationResult(
            verified=verified, rejected=rejected, violations=violations
        )

    def check_claim(self, claim: Claim, cutoff: datetime) -> list[RiskViolation]:
        """Return all violations of a single claim."""
        violations: list[RiskViolation] = []

        def add(kind: str, current: float, limit: float, severity: Severity, detail: str) -> None:
            violations.append(
                RiskViolation(
                    kind=kind,
                    current=current,
                    limit=limit,
                    severity=severity,
                    detail=detail,
                    ticker=claim.ticker,
                    claim_id=claim.id,
                )
            )

        if not 0.0 <= claim.confidence <= 1.0:
            add(
                "confidence_out_of_range",
                claim.confidence,
                1.0,
                Severity.CRITICAL,
                "Claim confidence must be in [0, 1]",
            )

        lag = (claim.timestamp - cutoff).total_seconds()
        if claim.timestamp > cutoff + CLAIM_TIMESTAMP_TOLERANCE:
            add(
                "claim_after_cutoff",
                lag,
                CLAIM_TIMESTAMP_TOLERANCE.total_seconds(),
                Severity.WARNING,
                "Claim produced well after the evidence cutoff",
            )

        for ev in claim.evidence:
            if ev.timestamp > cutoff:
                add(
                    "evidence_lookahead",
                    (ev.timestamp - cutoff).total_seconds(),
                    0.0,
                    Severity.CRITICAL,
                    f"Evidence {ev.id} observed after the cutoff",
                )
            elif cutoff - ev.timestamp > self.max_evidence_age:
                add(
                    "evidence_stale",
                    (cutoff - ev.timestamp).total_seconds(),
                    self.max_evidence_age.total_seconds(),
                    Severity.WARNING,
                    f"Evidence {ev.id} is older than the freshness window",
                )
            if not self._is_whitelisted(EvidenceKind(ev.kind), ev.source):
                add(
                    "source_not_whitelisted",
                    0.0,
                    0.0,
                    Severity.WARNING,
                    f"Evidence source '{ev.source}' is not whitelisted",
                )

        if claim.evidence:
            avg_relevance = sum(ev.relevance for ev in claim.evidence) / len(claim.evidence)
            if avg_relevance < self.min_relevance:
                add(
                    "low_relevance",
                    avg_relevance,
                    self.min_relevance,
                    Severity.CRITICAL,
                    "Average evidence relevance below minimum",
                )

        if claim.confidence > SUSPICIOUS_CONFIDENCE:
            add(
                "excessive_confidence",
                claim.confidence,
                SUSPICIOUS_CONFIDENCE,
                Severity.WARNING,
                "Suspiciously high confidence",
            )
        if len(claim.risk_flags) > MAX_RISK_FLAGS:
            add(
                "too_many_risk_flags",
                float(len(claim.risk_flags)),
                float(MAX_RISK_FLAGS),
                Severity.WARNING,
                "Claim carries many data-quality flags",
            )

        return violations

    def _is_whitelisted(self, kind: EvidenceKind, source: str) -> bool:
        source = source.lower()
        return any(allowed in source for allowed in self.source_whitelist.get(kind, ()))
