from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any, Iterable

from .config import GovernanceConfig
from .constants import COMPLEXITY_ENTROPY_WEIGHT, COMPLEXITY_SIZE_WEIGHT
from .types import GoalProposal, Proposal, RiskAssessment, RiskLevel
from .utils import canonical_json, clamp, normalize_tags

logger = logging.getLogger(__name__)

_MAX_BITS_PER_CHAR = 8.0
_SEVERITY = {RiskLevel.LOW: 0, RiskLevel.ELEVATED: 1, RiskLevel.CRITICAL: 2}


def payload_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    try:
        return canonical_json(payload)
    except (TypeError, ValueError):
        return str(payload)


def shannon_entropy(text: str) -> float:
    """Bits per character of ``text``."""
    if not text:
        return 0.0
    total = float(len(text))
    entropy = 0.0
    for count in Counter(text).values():
        probability = count / total
        entropy -= probability * math.log2(probability)
    return entropy


def payload_complexity(payload: Any, *, line_budget: int) -> float:
    """Blend of character entropy and size, both normalized to [0, 1]."""
    text = payload_text(payload)
    if not text.strip():
        return 0.0
    entropy_ratio = clamp(shannon_entropy(text) / _MAX_BITS_PER_CHAR, 0.0, 1.0)
    line_count = text.count("\n") + 1
    size_ratio = clamp(line_count / float(max(1, line_budget)), 0.0, 1.0)
    return COMPLEXITY_ENTROPY_WEIGHT * entropy_ratio + COMPLEXITY_SIZE_WEIGHT * size_ratio


class RiskAssessor:
    def __init__(self, config: GovernanceConfig | None = None) -> None:
        self._config = config or GovernanceConfig()

    @property
    def core_domains(self) -> frozenset:
        return self._config.core_domains

    def touches_core(self, domains: Iterable[str]) -> bool:
        return bool(set(normalize_tags(list(domains))) & self._config.core_domains)

    def assess(self, proposal: Proposal) -> RiskAssessment:
        complexity = payload_complexity(proposal.payload, line_budget=self._config.complexity_line_budget)
        affected = proposal.affected_domains

        if complexity > self._config.complexity_threshold or self.touches_core(affected):
            level, threshold = RiskLevel.CRITICAL, self._config.critical_threshold
        elif proposal.is_novel_insight:
            level, threshold = RiskLevel.ELEVATED, self._config.elevated_threshold
        else:
            level, threshold = RiskLevel.LOW, self._config.low_threshold

        logger.debug(
            "risk %s: %s (complexity=%.3f, threshold=%.2f)",
            proposal.proposal_id,
            level.value,
            complexity,
            threshold,
        )
        return RiskAssessment(
            proposal_id=proposal.proposal_id,
            risk_level=level,
            required_threshold=threshold,
            affected_domains=affected,
            complexity=complexity,
        )

    def assess_goal(self, goal: GoalProposal) -> RiskLevel:
        """Risk of a goal from its domain and objective; a declared level can only raise it."""
        complexity = payload_complexity(goal.objective, line_budget=self._config.complexity_line_budget)
        if complexity > self._config.complexity_threshold or self.touches_core([goal.domain]):
            assessed = RiskLevel.CRITICAL
        else:
            assessed = RiskLevel.LOW
        if goal.risk_level is not None and _SEVERITY[goal.risk_level] > _SEVERITY[assessed]:
            return goal.risk_level
        return assessed
