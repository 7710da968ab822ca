"""Governance configuration: one frozen object, normalized from loose mappings."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from . import constants
from .utils import as_float, as_int, clamp, normalize_tags

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GovernanceConfig:
    learning_rate: float = constants.TRUST_LEARNING_RATE
    decay_step: float = constants.TRUST_DECAY_STEP
    neutral_trust: float = constants.NEUTRAL_TRUST
    min_multiplier: float = constants.CONTEXT_MULTIPLIER_MIN
    max_multiplier: float = constants.CONTEXT_MULTIPLIER_MAX
    complexity_threshold: float = constants.COMPLEXITY_THRESHOLD
    complexity_line_budget: int = constants.COMPLEXITY_LINE_BUDGET
    core_domains: FrozenSet[str] = constants.CORE_DOMAINS
    low_threshold: float = constants.LOW_RISK_THRESHOLD
    elevated_threshold: float = constants.ELEVATED_RISK_THRESHOLD
    critical_threshold: float = constants.CRITICAL_RISK_THRESHOLD
    escalation_band: float = constants.ESCALATION_BAND
    default_quality: float = constants.DEFAULT_QUALITY
    collection_timeout_seconds: float = constants.COLLECTION_TIMEOUT_SECONDS
    escalation_timeout_seconds: float = constants.ESCALATION_TIMEOUT_SECONDS
    intent_admission_threshold: float = constants.INTENT_ADMISSION_THRESHOLD
    intent_lifespan_cycles: Optional[int] = None
    intent_bonus: float = constants.INTENT_ALIGNMENT_BONUS
    critical_risk_penalty: float = constants.CRITICAL_RISK_PENALTY
    context_rules: Tuple[Mapping[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def from_mapping(cls, raw: Any) -> "GovernanceConfig":
        source = raw if isinstance(raw, Mapping) else {}
        defaults = cls()

        def unit(key: str) -> float:
            return clamp(as_float(source.get(key), default=getattr(defaults, key)), 0.0, 1.0)

        def positive(key: str, floor: float = 0.0) -> float:
            return max(floor, as_float(source.get(key), default=getattr(defaults, key)))

        min_multiplier = positive("min_multiplier")
        max_multiplier = max(min_multiplier, positive("max_multiplier"))

        core_domains = defaults.core_domains
        if "core_domains" in source:
            core_domains = frozenset(normalize_tags(source.get("core_domains")))

        lifespan_raw = source.get("intent_lifespan_cycles")
        lifespan = None if lifespan_raw is None else max(1, as_int(lifespan_raw, default=1))

        rules_raw = source.get("context_rules")
        rules: Tuple[Mapping[str, Any], ...] = ()
        if isinstance(rules_raw, (list, tuple)):
            rules = tuple(dict(rule) for rule in rules_raw if isinstance(rule, Mapping))

        return cls(
            learning_rate=unit("learning_rate"),
            decay_step=unit("decay_step"),
            neutral_trust=unit("neutral_trust"),
            min_multiplier=min_multiplier,
            max_multiplier=max_multiplier,
            complexity_threshold=unit("complexity_threshold"),
            complexity_line_budget=max(1, as_int(source.get("complexity_line_budget"), default=defaults.complexity_line_budget)),
            core_domains=core_domains,
            low_threshold=unit("low_threshold"),
            elevated_threshold=unit("elevated_threshold"),
            critical_threshold=unit("critical_threshold"),
            escalation_band=unit("escalation_band"),
            default_quality=unit("default_quality"),
            collection_timeout_seconds=positive("collection_timeout_seconds", 0.01),
            escalation_timeout_seconds=positive("escalation_timeout_seconds"),
            intent_admission_threshold=unit("intent_admission_threshold"),
            intent_lifespan_cycles=lifespan,
            intent_bonus=positive("intent_bonus"),
            critical_risk_penalty=positive("critical_risk_penalty", 1.0),
            context_rules=rules,
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "learning_rate": self.learning_rate,
            "decay_step": self.decay_step,
            "neutral_trust": self.neutral_trust,
            "min_multiplier": self.min_multiplier,
            "max_multiplier": self.max_multiplier,
            "complexity_threshold": self.complexity_threshold,
            "complexity_line_budget": self.complexity_line_budget,
            "core_domains": sorted(self.core_domains),
            "low_threshold": self.low_threshold,
            "elevated_threshold": self.elevated_threshold,
            "critical_threshold": self.critical_threshold,
            "escalation_band": self.escalation_band,
            "default_quality": self.default_quality,
            "collection_timeout_seconds": self.collection_timeout_seconds,
            "escalation_timeout_seconds": self.escalation_timeout_seconds,
            "intent_admission_threshold": self.intent_admission_threshold,
            "intent_lifespan_cycles": self.intent_lifespan_cycles,
            "intent_bonus": self.intent_bonus,
            "critical_risk_penalty": self.critical_risk_penalty,
            "context_rules": [dict(rule) for rule in self.context_rules],
        }


def load_config(path: Path | str | None) -> GovernanceConfig:
    """Read a JSON config file; a missing or unreadable file yields the defaults."""
    if path is None:
        return GovernanceConfig()
    config_path = Path(path)
    if not config_path.exists():
        return GovernanceConfig()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except Exception:
        logger.warning("Failed to read governance config %s; using defaults", config_path, exc_info=True)
        return GovernanceConfig()
    return GovernanceConfig.from_mapping(raw)
