from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from .config import GovernanceConfig
from .constants import DEFAULT_RISK_PENALTY
from .intent_cache import IntentCache
from .risk import RiskAssessor
from .types import GlobalState, GoalProposal, RiskLevel, TaskContext
from .utils import clamp, normalize_agent_id
from .weighting import ContextualWeighter


@dataclass(frozen=True)
class GoalScore:
    goal_id: str
    agent_id: str
    order: int
    risk_level: RiskLevel
    intent_alignment: float
    strategic_value: float
    trust: float
    context_weight: float
    agent_weight: float
    risk_penalty: float
    score: float

    def as_dict(self) -> Dict[str, object]:
        return {
            "goal_id": self.goal_id,
            "agent_id": self.agent_id,
            "order": self.order,
            "risk_level": self.risk_level.value,
            "intent_alignment": self.intent_alignment,
            "strategic_value": self.strategic_value,
            "trust": self.trust,
            "context_weight": self.context_weight,
            "agent_weight": self.agent_weight,
            "risk_penalty": self.risk_penalty,
            "score": self.score,
        }


@dataclass(frozen=True)
class GoalSelection:
    winner: Optional[GoalProposal]
    scores: List[GoalScore]

    def as_dict(self) -> Dict[str, object]:
        return {
            "winner": self.winner.as_dict() if self.winner else None,
            "scores": [score.as_dict() for score in self.scores],
        }


class GoalArbiter:
    """One negotiation round over competing next-goal proposals.

    Holds no state between rounds; everything it weighs comes from the trust
    snapshot, the contextual weighter and the intent cache.
    """

    def __init__(
        self,
        *,
        weighter: ContextualWeighter,
        intent_cache: IntentCache,
        risk_assessor: RiskAssessor | None = None,
        config: GovernanceConfig | None = None,
    ) -> None:
        self._config = config or GovernanceConfig()
        self._weighter = weighter
        self._intent_cache = intent_cache
        self._risk_assessor = risk_assessor or RiskAssessor(self._config)

    def intent_alignment(self, global_state: GlobalState, domain: str) -> float:
        top_confidence = self._intent_cache.top_confidence(domain)
        return global_state.priority(domain) * (1.0 + self._config.intent_bonus * top_confidence)

    def select_goal(
        self,
        goal_proposals: Iterable[GoalProposal | Mapping[str, object]],
        trust_snapshot: Mapping[str, float] | None,
        global_state: GlobalState | None = None,
    ) -> GoalSelection:
        state = global_state or GlobalState()
        snapshot = {normalize_agent_id(key): value for key, value in (trust_snapshot or {}).items()}

        scores: List[GoalScore] = []
        best: Optional[GoalScore] = None
        winner: Optional[GoalProposal] = None
        for order, raw in enumerate(goal_proposals):
            goal = raw if isinstance(raw, GoalProposal) else GoalProposal.from_mapping(raw)
            risk_level = self._risk_assessor.assess_goal(goal)
            risk_penalty = self._config.critical_risk_penalty if risk_level is RiskLevel.CRITICAL else DEFAULT_RISK_PENALTY

            alignment = self.intent_alignment(state, goal.domain)
            strategic_value = goal.estimated_reward * alignment
            weight = self._weighter.adjusted_trust(goal.agent_id, TaskContext(domain=goal.domain))
            trust = clamp(snapshot.get(goal.agent_id, weight.base_trust), 0.0, 1.0)
            agent_weight = weight.multiplier * trust
            score = (strategic_value * agent_weight) / risk_penalty

            entry = GoalScore(
                goal_id=goal.goal_id,
                agent_id=goal.agent_id,
                order=order,
                risk_level=risk_level,
                intent_alignment=alignment,
                strategic_value=strategic_value,
                trust=trust,
                context_weight=weight.multiplier,
                agent_weight=agent_weight,
                risk_penalty=risk_penalty,
                score=score,
            )
            scores.append(entry)
            if best is None or entry.score > best.score:
                best = entry
                winner = goal

        return GoalSelection(winner=winner, scores=scores)
