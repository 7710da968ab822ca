from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .utils import as_float, clamp, normalize_agent_id, normalize_tag, normalize_tags


class RiskLevel(str, Enum):
    LOW = "low"
    ELEVATED = "elevated"
    CRITICAL = "critical"


class Decision(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class HallucinationClass(str, Enum):
    NOISE = "noise"
    SALVAGE_CANDIDATE = "salvage_candidate"
    NOVEL_INSIGHT = "novel_insight"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class MalformedProposalError(ValueError):
    """Raised when an external proposal record is missing required fields."""

    def __init__(self, message: str, *, agent_id: str = "", proposal_id: str = "") -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.proposal_id = proposal_id


class UnknownEscalationError(KeyError):
    """Raised for verdicts on proposals that are not awaiting review."""


_REQUIRED_PROPOSAL_FIELDS = ("proposal_id", "agent_id", "payload", "domain")

# Set by the collector when a record names an agent other than the source that produced it.
CLAIMED_AGENT_FIELD = "claimed_agent_id"


def coerce_risk_level(value: Any) -> Optional[RiskLevel]:
    if isinstance(value, RiskLevel):
        return value
    try:
        return RiskLevel(normalize_tag(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class AgentDefinition:
    agent_id: str
    role: str


@dataclass(frozen=True)
class Proposal:
    """A candidate code mutation submitted by one agent; immutable once built."""

    proposal_id: str
    agent_id: str
    payload: Any
    domain: str
    rationale: str = ""
    domain_tags: Tuple[str, ...] = ()
    hallucination_class: HallucinationClass = HallucinationClass.SALVAGE_CANDIDATE
    novel: bool = False

    @property
    def is_novel_insight(self) -> bool:
        return self.hallucination_class is HallucinationClass.NOVEL_INSIGHT

    @property
    def affected_domains(self) -> Tuple[str, ...]:
        return tuple(normalize_tags([self.domain, *self.domain_tags]))

    @classmethod
    def from_mapping(cls, raw: Any) -> "Proposal":
        if isinstance(raw, Proposal):
            return raw
        if not isinstance(raw, Mapping):
            raise MalformedProposalError(f"Proposal record must be a mapping, got {type(raw).__name__}.")

        agent_id = normalize_agent_id(raw.get("agent_id"))
        proposal_id = str(raw.get("proposal_id") or "").strip()
        missing = [name for name in _REQUIRED_PROPOSAL_FIELDS if _is_blank(raw.get(name))]
        if missing:
            raise MalformedProposalError(
                f"Proposal is missing required fields: {', '.join(missing)}.",
                agent_id=agent_id,
                proposal_id=proposal_id,
            )

        claimed = normalize_agent_id(raw.get(CLAIMED_AGENT_FIELD))
        if claimed and claimed != agent_id:
            raise MalformedProposalError(
                f"Proposal claims agent {claimed} but was submitted by {agent_id}.",
                agent_id=agent_id,
                proposal_id=proposal_id,
            )

        raw_class = raw.get("hallucination_class", HallucinationClass.SALVAGE_CANDIDATE.value)
        try:
            hallucination_class = HallucinationClass(normalize_tag(getattr(raw_class, "value", raw_class)))
        except ValueError:
            raise MalformedProposalError(
                f"Unknown hallucination class {raw_class!r}.",
                agent_id=agent_id,
                proposal_id=proposal_id,
            ) from None

        novel_default = hallucination_class is HallucinationClass.NOVEL_INSIGHT
        return cls(
            proposal_id=proposal_id,
            agent_id=agent_id,
            payload=raw.get("payload"),
            domain=normalize_tag(raw.get("domain")),
            rationale=str(raw.get("rationale") or "").strip(),
            domain_tags=tuple(normalize_tags(raw.get("domain_tags", ()))),
            hallucination_class=hallucination_class,
            novel=bool(raw.get("novel", novel_default)),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "proposal_id": self.proposal_id,
            "agent_id": self.agent_id,
            "payload": self.payload,
            "domain": self.domain,
            "rationale": self.rationale,
            "domain_tags": list(self.domain_tags),
            "hallucination_class": self.hallucination_class.value,
            "novel": self.novel,
        }


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class QualitySignal:
    """Objective result reported by the validation sandbox for one proposal."""

    passed: bool
    score: float
    confidence: Optional[float] = None

    @property
    def effective_score(self) -> float:
        return clamp(self.score, 0.0, 1.0) if self.passed else 0.0

    @classmethod
    def coerce(cls, value: Any) -> Optional["QualitySignal"]:
        if value is None:
            return None
        if isinstance(value, QualitySignal):
            return value
        if isinstance(value, bool):
            return cls(passed=value, score=1.0 if value else 0.0)
        if isinstance(value, (int, float)):
            return cls(passed=True, score=clamp(as_float(value), 0.0, 1.0))
        if isinstance(value, Mapping):
            confidence_raw = value.get("confidence")
            confidence = None if confidence_raw is None else clamp(as_float(confidence_raw), 0.0, 1.0)
            return cls(
                passed=bool(value.get("passed", True)),
                score=clamp(as_float(value.get("score"), default=0.0), 0.0, 1.0),
                confidence=confidence,
            )
        return None

    def as_dict(self) -> Dict[str, object]:
        return {"passed": self.passed, "score": self.score, "confidence": self.confidence}


@dataclass(frozen=True)
class TaskContext:
    domain: str
    file_category: Optional[str] = None
    risk_level: Optional[RiskLevel] = None

    @classmethod
    def coerce(cls, value: Any) -> "TaskContext":
        if isinstance(value, TaskContext):
            return value
        if isinstance(value, str):
            return cls(domain=normalize_tag(value))
        if isinstance(value, Mapping):
            file_category = normalize_tag(value.get("file_category")) or None
            return cls(
                domain=normalize_tag(value.get("domain")),
                file_category=file_category,
                risk_level=coerce_risk_level(value.get("risk_level")),
            )
        return cls(domain="")

    def with_risk(self, risk_level: RiskLevel) -> "TaskContext":
        return replace(self, risk_level=risk_level)

    def as_dict(self) -> Dict[str, object]:
        return {
            "domain": self.domain,
            "file_category": self.file_category,
            "risk_level": self.risk_level.value if self.risk_level else None,
        }


@dataclass(frozen=True)
class RiskAssessment:
    proposal_id: str
    risk_level: RiskLevel
    required_threshold: float
    affected_domains: Tuple[str, ...]
    complexity: float

    def as_dict(self) -> Dict[str, object]:
        return {
            "proposal_id": self.proposal_id,
            "risk_level": self.risk_level.value,
            "required_threshold": self.required_threshold,
            "affected_domains": list(self.affected_domains),
            "complexity": self.complexity,
        }


@dataclass(frozen=True)
class ConsensusOutcome:
    """Terminal decision for one proposal plus the scoring breakdown behind it."""

    proposal_id: str
    agent_id: str
    decision: Decision
    weighted_score: float
    confidence: float
    reason: str
    domain: str = ""
    novel: bool = False
    base_trust: float = 0.0
    context_weight: float = 1.0
    adjusted_trust: float = 0.0
    quality: float = 0.0
    risk_level: Optional[RiskLevel] = None
    required_threshold: float = 1.0

    @property
    def accepted(self) -> bool:
        return self.decision is Decision.ACCEPTED

    def resolved(self, decision: Decision, reason: str) -> "ConsensusOutcome":
        return replace(self, decision=decision, reason=reason)

    def as_dict(self) -> Dict[str, object]:
        return {
            "proposal_id": self.proposal_id,
            "agent_id": self.agent_id,
            "decision": self.decision.value,
            "weighted_score": self.weighted_score,
            "confidence": self.confidence,
            "reason": self.reason,
            "domain": self.domain,
            "novel": self.novel,
            "base_trust": self.base_trust,
            "context_weight": self.context_weight,
            "adjusted_trust": self.adjusted_trust,
            "quality": self.quality,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "required_threshold": self.required_threshold,
        }


@dataclass(frozen=True)
class StrategicIntent:
    intent_id: str
    principle: str
    confidence: float
    domain: str
    source_proposal_id: str
    source_agent: str
    created_at: str
    created_cycle: int
    lifespan_cycles: Optional[int] = None
    expired: bool = False

    def is_due(self, cycle: int) -> bool:
        if self.lifespan_cycles is None:
            return False
        return cycle >= self.created_cycle + self.lifespan_cycles

    def as_dict(self) -> Dict[str, object]:
        return {
            "intent_id": self.intent_id,
            "principle": self.principle,
            "confidence": self.confidence,
            "domain": self.domain,
            "source_proposal_id": self.source_proposal_id,
            "source_agent": self.source_agent,
            "created_at": self.created_at,
            "created_cycle": self.created_cycle,
            "lifespan_cycles": self.lifespan_cycles,
            "expired": self.expired,
        }


@dataclass(frozen=True)
class GoalProposal:
    goal_id: str
    agent_id: str
    objective: str
    estimated_reward: float
    domain: str
    risk_level: Optional[RiskLevel] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "GoalProposal":
        return cls(
            goal_id=str(raw.get("goal_id") or "").strip(),
            agent_id=normalize_agent_id(raw.get("agent_id")),
            objective=str(raw.get("objective") or "").strip(),
            estimated_reward=max(0.0, as_float(raw.get("estimated_reward"), default=0.0)),
            domain=normalize_tag(raw.get("domain")),
            risk_level=coerce_risk_level(raw.get("risk_level")),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "goal_id": self.goal_id,
            "agent_id": self.agent_id,
            "objective": self.objective,
            "estimated_reward": self.estimated_reward,
            "domain": self.domain,
            "risk_level": self.risk_level.value if self.risk_level else None,
        }


@dataclass(frozen=True)
class GlobalState:
    domain_priorities: Mapping[str, float] = field(default_factory=dict)

    def priority(self, domain: str) -> float:
        wanted = normalize_tag(domain)
        for key, value in self.domain_priorities.items():
            if normalize_tag(key) == wanted:
                return max(0.0, as_float(value, default=1.0))
        return 1.0
