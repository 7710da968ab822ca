from .arbiter import GoalArbiter, GoalScore, GoalSelection
from .collection import CollectionResult, ProposalCollector, RoundCancelledError
from .config import GovernanceConfig, load_config
from .consensus import ConsensusEngine, PendingEscalation, RoundResult, Verdict
from .constants import CORE_DOMAINS, NEUTRAL_TRUST, STABILITY_ROLLING_WINDOW
from .intent_cache import IntentCache, IntentCacheStore, abstract_principle
from .ledger import GovernanceAuditLedger
from .registry import TrustRegistry, TrustRegistryStore, TrustUpdate
from .risk import RiskAssessor, payload_complexity
from .stability import TrustStabilityMetric
from .types import (
    AgentDefinition,
    ConsensusOutcome,
    Decision,
    GlobalState,
    GoalProposal,
    HallucinationClass,
    MalformedProposalError,
    OutcomeKind,
    Proposal,
    QualitySignal,
    RiskAssessment,
    RiskLevel,
    StrategicIntent,
    TaskContext,
    UnknownEscalationError,
)
from .weighting import DEFAULT_CONTEXT_RULES, ContextRule, ContextWeight, ContextualWeighter

__all__ = [
    "AgentDefinition",
    "CORE_DOMAINS",
    "CollectionResult",
    "ConsensusEngine",
    "ConsensusOutcome",
    "ContextRule",
    "ContextWeight",
    "ContextualWeighter",
    "DEFAULT_CONTEXT_RULES",
    "Decision",
    "GlobalState",
    "GoalArbiter",
    "GoalProposal",
    "GoalScore",
    "GoalSelection",
    "GovernanceAuditLedger",
    "GovernanceConfig",
    "HallucinationClass",
    "IntentCache",
    "IntentCacheStore",
    "MalformedProposalError",
    "NEUTRAL_TRUST",
    "OutcomeKind",
    "PendingEscalation",
    "Proposal",
    "ProposalCollector",
    "QualitySignal",
    "RiskAssessment",
    "RiskAssessor",
    "RiskLevel",
    "RoundCancelledError",
    "RoundResult",
    "STABILITY_ROLLING_WINDOW",
    "StrategicIntent",
    "TaskContext",
    "TrustRegistry",
    "TrustRegistryStore",
    "TrustStabilityMetric",
    "TrustUpdate",
    "UnknownEscalationError",
    "Verdict",
    "abstract_principle",
    "load_config",
    "payload_complexity",
]
