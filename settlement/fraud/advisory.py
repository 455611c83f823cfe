"""External fraud advisory (language-model reasoning service).

The advisory call is the only operation in the engine that blocks on the
network. Its outcome is an explicit result type: ``request_advisory``
returns either an ``AdvisoryAnalysis`` or an ``AdvisoryUnavailable``, and
``analyze_with_ai`` always resolves the latter into the local fallback
analysis. A failing or slow service therefore never blocks verification.

The HTTP client speaks the OpenAI-compatible chat-completions protocol and
asks for a JSON object ``{riskScore, fraudIndicators, confidence,
explanation}``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Sequence, Union

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from settlement.fraud.scorer import calculate_risk_score
from settlement.models import TransactionRecord, VerificationConfig

logger = structlog.get_logger(__name__)

FALLBACK_CONFIDENCE = 0.3

SYSTEM_PROMPT = (
    "You are a fraud detection expert reviewing cash-back transactions "
    "submitted by customers of Swedish retail businesses. Respond only with "
    "a JSON object with the keys riskScore (integer 0-100), fraudIndicators "
    "(list of short snake_case labels), confidence (number 0-1) and "
    "explanation (one or two sentences)."
)


@dataclass(frozen=True)
class AdvisoryAnalysis:
    risk_score: int
    fraud_indicators: list[str] = field(default_factory=list)
    confidence: float = 0.0
    explanation: str = ""
    advisory_used: bool = True


@dataclass(frozen=True)
class AdvisoryUnavailable:
    reason: str


AdvisoryOutcome = Union[AdvisoryAnalysis, AdvisoryUnavailable]


class AdvisoryPayload(BaseModel):
    """Shape of the JSON object the reasoning service must return."""

    risk_score: int = Field(alias="riskScore", ge=0, le=100)
    fraud_indicators: list[str] = Field(default_factory=list, alias="fraudIndicators")
    confidence: float = Field(ge=0.0, le=1.0)
    explanation: str = ""


class AdvisoryClient(Protocol):
    def request_advisory(
        self, transaction: TransactionRecord, patterns: Sequence[str]
    ) -> AdvisoryOutcome: ...


class DisabledAdvisoryClient:
    """Used when the advisory feature flag is off."""

    def request_advisory(
        self, transaction: TransactionRecord, patterns: Sequence[str]
    ) -> AdvisoryOutcome:
        return AdvisoryUnavailable(reason="advisory disabled")


def build_user_prompt(transaction: TransactionRecord, patterns: Sequence[str]) -> str:
    payload = transaction.model_dump(mode="json")
    known = ", ".join(patterns) if patterns else "none"
    return (
        "Please analyze this transaction for signs of cash-back fraud.\n"
        f"Transaction: {json.dumps(payload, sort_keys=True)}\n"
        f"Patterns already detected in the same batch: {known}"
    )


class HttpAdvisoryClient:
    """Chat-completions client with a hard timeout on every request."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.api_url = api_url
        self.model = model
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def build_request_body(
        self, transaction: TransactionRecord, patterns: Sequence[str]
    ) -> dict:
        return {
            "model": self.model,
            "temperature": 0.1,
            "max_tokens": 1000,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(transaction, patterns)},
            ],
        }

    def request_advisory(
        self, transaction: TransactionRecord, patterns: Sequence[str]
    ) -> AdvisoryOutcome:
        body = self.build_request_body(transaction, patterns)
        try:
            response = self._client.post(self.api_url, json=body)
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
            payload = AdvisoryPayload.model_validate(json.loads(content))
        except httpx.TimeoutException:
            logger.warning("advisory_timeout", transaction_id=transaction.transaction_id)
            return AdvisoryUnavailable(reason="timeout")
        except httpx.HTTPError as exc:
            logger.warning(
                "advisory_http_error",
                transaction_id=transaction.transaction_id,
                error=str(exc),
            )
            return AdvisoryUnavailable(reason=f"http error: {exc}")
        except (KeyError, IndexError, TypeError, ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError
            logger.warning(
                "advisory_malformed_response",
                transaction_id=transaction.transaction_id,
                error=str(exc),
            )
            return AdvisoryUnavailable(reason="malformed response")

        return AdvisoryAnalysis(
            risk_score=payload.risk_score,
            fraud_indicators=payload.fraud_indicators,
            confidence=payload.confidence,
            explanation=payload.explanation,
        )

    def close(self) -> None:
        self._client.close()


def fallback_analysis(
    transaction: TransactionRecord,
    now: Optional[datetime] = None,
    config: Optional[VerificationConfig] = None,
) -> AdvisoryAnalysis:
    """Deterministic stand-in used whenever the advisory is unavailable."""
    return AdvisoryAnalysis(
        risk_score=calculate_risk_score(transaction, now, config),
        fraud_indicators=[],
        confidence=FALLBACK_CONFIDENCE,
        explanation="Advisory service unavailable; local risk score used",
        advisory_used=False,
    )


def analyze_with_ai(
    transaction: TransactionRecord,
    patterns: Sequence[str],
    client: AdvisoryClient,
    now: Optional[datetime] = None,
    config: Optional[VerificationConfig] = None,
) -> AdvisoryAnalysis:
    outcome = client.request_advisory(transaction, patterns)
    if isinstance(outcome, AdvisoryUnavailable):
        logger.info(
            "advisory_fallback",
            transaction_id=transaction.transaction_id,
            reason=outcome.reason,
        )
        return fallback_analysis(transaction, now, config)
    return outcome
