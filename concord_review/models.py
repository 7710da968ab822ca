from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from concord_governance.consensus import PendingEscalation
from concord_governance.types import ConsensusOutcome, StrategicIntent

CHANNEL_ESCALATION_OPENED = "escalation_opened"
CHANNEL_ESCALATION_RESOLVED = "escalation_resolved"
CHANNEL_ESCALATION_EXPIRED = "escalation_expired"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_json_safe(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value

    if isinstance(value, Mapping):
        return {str(key): to_json_safe(raw) for key, raw in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]

    if hasattr(value, "as_dict") and callable(value.as_dict):
        return to_json_safe(value.as_dict())

    return str(value)


class EscalationView(BaseModel):
    proposal_id: str
    agent_id: str = ""
    reason: str = ""
    rationale: str = ""
    domain: str = ""
    affected_domains: List[str] = Field(default_factory=list)
    complexity: float = 0.0
    weighted_score: float = 0.0
    required_threshold: float = 1.0
    risk_level: Optional[str] = None
    escalated_at: float = 0.0
    deadline: float = 0.0
    breakdown: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "ignore"

    @classmethod
    def from_pending(cls, pending: PendingEscalation) -> "EscalationView":
        outcome = pending.outcome
        return cls(
            proposal_id=outcome.proposal_id,
            agent_id=outcome.agent_id,
            reason=outcome.reason,
            rationale=pending.proposal.rationale,
            domain=pending.proposal.domain,
            affected_domains=list(pending.assessment.affected_domains),
            complexity=pending.assessment.complexity,
            weighted_score=outcome.weighted_score,
            required_threshold=outcome.required_threshold,
            risk_level=outcome.risk_level.value if outcome.risk_level else None,
            escalated_at=pending.escalated_at,
            deadline=pending.deadline,
            breakdown=to_json_safe(outcome.as_dict()),
        )


class VerdictRequest(BaseModel):
    approved: bool
    reviewer: Optional[str] = None

    class Config:
        extra = "ignore"


class OutcomeResponse(BaseModel):
    proposal_id: str
    agent_id: str = ""
    decision: str
    weighted_score: float = 0.0
    confidence: float = 0.0
    reason: str = ""
    risk_level: Optional[str] = None
    required_threshold: float = 1.0

    class Config:
        extra = "ignore"

    @classmethod
    def from_outcome(cls, outcome: ConsensusOutcome) -> "OutcomeResponse":
        return cls(
            proposal_id=outcome.proposal_id,
            agent_id=outcome.agent_id,
            decision=outcome.decision.value,
            weighted_score=outcome.weighted_score,
            confidence=outcome.confidence,
            reason=outcome.reason,
            risk_level=outcome.risk_level.value if outcome.risk_level else None,
            required_threshold=outcome.required_threshold,
        )


class IntentView(BaseModel):
    intent_id: str
    principle: str
    confidence: float
    domain: str
    source_proposal_id: str = ""
    source_agent: str = ""
    created_cycle: int = 0

    class Config:
        extra = "ignore"

    @classmethod
    def from_intent(cls, intent: StrategicIntent) -> "IntentView":
        return cls(
            intent_id=intent.intent_id,
            principle=intent.principle,
            confidence=intent.confidence,
            domain=intent.domain,
            source_proposal_id=intent.source_proposal_id,
            source_agent=intent.source_agent,
            created_cycle=intent.created_cycle,
        )


class TrustResponse(BaseModel):
    version: int = 0
    calibrated: bool = False
    scores: Dict[str, float] = Field(default_factory=dict)
    global_variance: float = 0.0
    timestamp: str = Field(default_factory=utc_now_iso)

    class Config:
        extra = "ignore"


class StreamEnvelope(BaseModel):
    channel: str
    timestamp: str = Field(default_factory=utc_now_iso)
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "ignore"

    @classmethod
    def build(cls, *, channel: str, data: Any) -> "StreamEnvelope":
        payload = data if isinstance(data, Mapping) else {"value": data}
        return cls(channel=str(channel), data=to_json_safe(payload))


def model_to_dict(model: object) -> dict:
    dump = getattr(model, "model_dump", None)
    if callable(dump):
        return dict(dump())
    as_dict = getattr(model, "dict", None)
    if callable(as_dict):
        return dict(as_dict())
    return dict(model)  # type: ignore[arg-type]
