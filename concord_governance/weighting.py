"""Context-dependent trust multipliers.

Rules are evaluated in declaration order and the first match wins, so tables must
list the most specific rules first. A pair that matches nothing gets ``1.0``. Every
multiplier is clamped to the configured bound before it touches a trust score.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import GovernanceConfig
from .constants import (
    DOCUMENTATION_DOMAINS,
    DOCUMENTATION_SUPPRESSION_MULTIPLIER,
    SECURITY_CRITICAL_MULTIPLIER,
    SPECIALIST_MULTIPLIER,
    TECHNICAL_ROLES,
)
from .registry import TrustRegistry
from .types import RiskLevel, TaskContext, coerce_risk_level
from .utils import as_float, clamp, normalize_tags

RulePredicate = Callable[[str, TaskContext], bool]

_SPECIALIST_SUFFIXES = ("_specialist", "_expert")


def _specialty(role: str) -> str:
    for suffix in _SPECIALIST_SUFFIXES:
        if role.endswith(suffix):
            return role[: -len(suffix)]
    return role


@dataclass(frozen=True)
class ContextRule:
    name: str
    multiplier: float
    roles: FrozenSet[str] = frozenset()
    domains: FrozenSet[str] = frozenset()
    file_categories: FrozenSet[str] = frozenset()
    risk_levels: FrozenSet[RiskLevel] = frozenset()
    role_matches_domain: bool = False
    predicate: Optional[RulePredicate] = field(default=None, compare=False)

    def matches(self, role: str, context: TaskContext) -> bool:
        if self.roles and role not in self.roles:
            return False
        if self.domains and context.domain not in self.domains:
            return False
        if self.file_categories and context.file_category not in self.file_categories:
            return False
        if self.risk_levels and context.risk_level not in self.risk_levels:
            return False
        if self.role_matches_domain:
            specialty = _specialty(role)
            if not specialty or specialty not in {context.domain, context.file_category}:
                return False
        if self.predicate is not None and not self.predicate(role, context):
            return False
        return True

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ContextRule":
        risk_levels = frozenset(
            level for level in (coerce_risk_level(item) for item in normalize_tags(raw.get("risk_levels", ()))) if level
        )
        return cls(
            name=str(raw.get("name") or "unnamed").strip(),
            multiplier=max(0.0, as_float(raw.get("multiplier"), default=1.0)),
            roles=frozenset(normalize_tags(raw.get("roles", ()))),
            domains=frozenset(normalize_tags(raw.get("domains", ()))),
            file_categories=frozenset(normalize_tags(raw.get("file_categories", ()))),
            risk_levels=risk_levels,
            role_matches_domain=bool(raw.get("role_matches_domain", False)),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "multiplier": self.multiplier,
            "roles": sorted(self.roles),
            "domains": sorted(self.domains),
            "file_categories": sorted(self.file_categories),
            "risk_levels": sorted(level.value for level in self.risk_levels),
            "role_matches_domain": self.role_matches_domain,
            "custom_predicate": self.predicate is not None,
        }


DEFAULT_CONTEXT_RULES: Tuple[ContextRule, ...] = (
    ContextRule(
        name="security_on_critical_risk",
        multiplier=SECURITY_CRITICAL_MULTIPLIER,
        roles=frozenset({"security"}),
        risk_levels=frozenset({RiskLevel.CRITICAL}),
    ),
    ContextRule(
        name="specialist_on_own_domain",
        multiplier=SPECIALIST_MULTIPLIER,
        role_matches_domain=True,
    ),
    ContextRule(
        name="technical_role_on_documentation",
        multiplier=DOCUMENTATION_SUPPRESSION_MULTIPLIER,
        roles=TECHNICAL_ROLES,
        domains=DOCUMENTATION_DOMAINS,
    ),
)


@dataclass(frozen=True)
class ContextWeight:
    agent_id: str
    rule: Optional[str]
    base_trust: float
    multiplier: float

    @property
    def adjusted_trust(self) -> float:
        return self.base_trust * self.multiplier

    def as_dict(self) -> Dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "rule": self.rule,
            "base_trust": self.base_trust,
            "multiplier": self.multiplier,
            "adjusted_trust": self.adjusted_trust,
        }


class ContextualWeighter:
    def __init__(
        self,
        registry: TrustRegistry,
        rules: Optional[Sequence[ContextRule]] = None,
        *,
        min_multiplier: float | None = None,
        max_multiplier: float | None = None,
        config: GovernanceConfig | None = None,
    ) -> None:
        resolved = config or GovernanceConfig()
        self._registry = registry
        self._rules: List[ContextRule] = list(DEFAULT_CONTEXT_RULES if rules is None else rules)
        self._min = resolved.min_multiplier if min_multiplier is None else float(min_multiplier)
        self._max = resolved.max_multiplier if max_multiplier is None else float(max_multiplier)
        if self._max < self._min:
            raise ValueError("max_multiplier must not be below min_multiplier.")

    @classmethod
    def from_config(cls, registry: TrustRegistry, config: GovernanceConfig) -> "ContextualWeighter":
        rules: Optional[List[ContextRule]] = None
        if config.context_rules:
            rules = [ContextRule.from_mapping(raw) for raw in config.context_rules]
        return cls(registry, rules, config=config)

    @property
    def bounds(self) -> Tuple[float, float]:
        return (self._min, self._max)

    @property
    def rules(self) -> List[ContextRule]:
        return list(self._rules)

    def add_rule(self, rule: ContextRule, *, index: Optional[int] = None) -> None:
        if index is None:
            self._rules.append(rule)
        else:
            self._rules.insert(index, rule)

    def extend(self, rules: Iterable[ContextRule]) -> None:
        self._rules.extend(rules)

    def match(self, agent_id: str, task_context: Any) -> Optional[ContextRule]:
        context = TaskContext.coerce(task_context)
        role = self._registry.role_of(agent_id)
        for rule in self._rules:
            if rule.matches(role, context):
                return rule
        return None

    def weight(self, agent_id: str, task_context: Any) -> float:
        rule = self.match(agent_id, task_context)
        multiplier = rule.multiplier if rule is not None else 1.0
        return clamp(multiplier, self._min, self._max)

    def adjusted_trust(self, agent_id: str, task_context: Any) -> ContextWeight:
        rule = self.match(agent_id, task_context)
        multiplier = clamp(rule.multiplier if rule is not None else 1.0, self._min, self._max)
        return ContextWeight(
            agent_id=agent_id,
            rule=rule.name if rule is not None else None,
            base_trust=self._registry.get_trust(agent_id),
            multiplier=multiplier,
        )
