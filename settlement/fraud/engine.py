"""Fraud assessment orchestrator.

Runs the local rules for each transaction, optionally consults the external
advisory service, and maps the resulting score onto a recommendation:

  1. Local rules (amount, timing, round number, timestamp, completeness)
  2. Advisory analysis, or the deterministic fallback when unavailable
  3. Final score = max(local score, advisory score)
  4. Recommendation via low_risk_max / high_risk_min

Assessments are advisory input only. They never change a session or item
status by themselves.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from settlement.errors import ValidationFailed
from settlement.fraud.advisory import (
    AdvisoryAnalysis,
    AdvisoryClient,
    DisabledAdvisoryClient,
    analyze_with_ai,
)
from settlement.fraud.cache import AssessmentCache
from settlement.fraud.patterns import detect_patterns
from settlement.fraud.scorer import recommend, score_transaction
from settlement.models import (
    FraudAssessment,
    FraudPatternRecord,
    Recommendation,
    TransactionRecord,
    VerificationConfig,
    utcnow,
)
from settlement.storage.memory import MemoryStore

logger = structlog.get_logger(__name__)


@dataclass
class BatchAssessment:
    """Per-transaction assessments plus the batch-level roll-up."""

    batch: FraudAssessment
    transactions: Dict[str, FraudAssessment] = field(default_factory=dict)
    patterns: List[str] = field(default_factory=list)


class FraudScorer:
    """Scores transactions and batches against the configured thresholds."""

    def __init__(
        self,
        store: MemoryStore,
        config: VerificationConfig,
        advisory: Optional[AdvisoryClient] = None,
        cache_ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.advisory = advisory or DisabledAdvisoryClient()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock

    def new_run_cache(self) -> AssessmentCache[AdvisoryAnalysis]:
        """A cache scoped to one processing run."""
        return AssessmentCache(ttl_seconds=self.cache_ttl_seconds, clock=self.clock)

    def _advisory_for(
        self,
        transaction: TransactionRecord,
        patterns: Sequence[str],
        now: datetime,
        batch_id: Optional[str],
        cache: Optional[AssessmentCache[AdvisoryAnalysis]],
    ) -> AdvisoryAnalysis:
        if cache is None:
            return analyze_with_ai(transaction, patterns, self.advisory, now, self.config)
        # Transaction ids are external strings that different businesses reuse
        key = (batch_id, transaction.transaction_id)
        cached = cache.get(key)
        if cached is not None:
            return cached
        analysis = analyze_with_ai(transaction, patterns, self.advisory, now, self.config)
        cache.put(key, analysis)
        return analysis

    def assess_transaction(
        self,
        transaction: TransactionRecord,
        patterns: Sequence[str] = (),
        now: Optional[datetime] = None,
        batch_id: Optional[str] = None,
        cache: Optional[AssessmentCache[AdvisoryAnalysis]] = None,
    ) -> FraudAssessment:
        now = now or utcnow()
        local_score, reasons, indicators = score_transaction(transaction, now, self.config)
        analysis = self._advisory_for(transaction, patterns, now, batch_id, cache)

        risk_score = local_score
        explanation = "; ".join(reasons) or "No risk signals detected"
        if analysis.advisory_used:
            risk_score = max(local_score, analysis.risk_score)
            for indicator in analysis.fraud_indicators:
                if indicator not in indicators:
                    indicators.append(indicator)
            if analysis.explanation:
                explanation = analysis.explanation

        return FraudAssessment(
            transaction_id=transaction.transaction_id,
            batch_id=batch_id,
            risk_score=risk_score,
            fraud_indicators=indicators,
            confidence_score=analysis.confidence,
            recommendation=recommend(risk_score, self.config),
            patterns_detected=list(patterns),
            advisory_used=analysis.advisory_used,
            explanation=explanation,
        )

    def assess_batch(
        self,
        batch_id: str,
        transactions: Sequence[TransactionRecord],
        now: Optional[datetime] = None,
    ) -> BatchAssessment:
        """Assess every transaction and roll the results up to the batch.

        The batch score is the mean of the transaction scores. Any detected
        pattern lifts an ``approve`` recommendation to ``review``.
        """
        now = now or utcnow()
        patterns = detect_patterns(transactions, self.config)
        cache = self.new_run_cache()

        per_transaction: Dict[str, FraudAssessment] = {}
        for txn in transactions:
            per_transaction[txn.transaction_id] = self.assess_transaction(
                txn, patterns, now, batch_id, cache=cache
            )

        assessments = list(per_transaction.values())
        if assessments:
            mean_score = round(sum(a.risk_score for a in assessments) / len(assessments))
            mean_confidence = sum(a.confidence_score for a in assessments) / len(assessments)
        else:
            mean_score = 0
            mean_confidence = 1.0

        indicators: List[str] = []
        for assessment in assessments:
            for indicator in assessment.fraud_indicators:
                if indicator not in indicators:
                    indicators.append(indicator)

        recommendation = recommend(mean_score, self.config)
        if patterns and recommendation == Recommendation.APPROVE:
            recommendation = Recommendation.REVIEW

        batch = FraudAssessment(
            batch_id=batch_id,
            risk_score=mean_score,
            fraud_indicators=indicators,
            confidence_score=round(mean_confidence, 4),
            recommendation=recommendation,
            patterns_detected=patterns,
            advisory_used=any(a.advisory_used for a in assessments),
            explanation=(
                f"{len(assessments)} transactions assessed; "
                f"patterns: {', '.join(patterns) or 'none'}"
            ),
        )

        logger.info(
            "batch_assessed",
            batch_id=batch_id,
            transactions=len(assessments),
            risk_score=mean_score,
            recommendation=recommendation.value,
            patterns=patterns,
        )
        return BatchAssessment(batch=batch, transactions=per_transaction, patterns=patterns)

    # ── Thresholds ───────────────────────────────────────────

    def get_risk_thresholds(self) -> Dict[str, int]:
        return {
            "low_risk_max": self.config.low_risk_max,
            "high_risk_min": self.config.high_risk_min,
        }

    def set_risk_thresholds(self, low_risk_max: int, high_risk_min: int) -> Dict[str, int]:
        if not 0 <= low_risk_max < high_risk_min <= 100:
            raise ValidationFailed(
                "low_risk_max must be below high_risk_min, both within 0-100",
                code="INVALID_THRESHOLDS",
                details={"low_risk_max": low_risk_max, "high_risk_min": high_risk_min},
            )
        self.config = self.config.model_copy(
            update={"low_risk_max": low_risk_max, "high_risk_min": high_risk_min}
        )
        return self.get_risk_thresholds()

    # ── Pattern history ──────────────────────────────────────

    def save_fraud_patterns(
        self,
        batch_id: str,
        business_id: str,
        patterns: Sequence[str],
        confidence_score: float = 1.0,
    ) -> FraudPatternRecord:
        record = FraudPatternRecord(
            batch_id=batch_id,
            business_id=business_id,
            patterns_detected=list(patterns),
            confidence_score=confidence_score,
        )
        self.store.add_fraud_pattern(record)
        return record

    def get_historical_patterns(self, business_id: str) -> List[FraudPatternRecord]:
        return self.store.list_fraud_patterns(business_id)
