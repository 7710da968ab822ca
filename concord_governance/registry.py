from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import GovernanceConfig
from .constants import (
    DEFAULT_ROLE,
    REGISTRY_EPOCH_TIMESTAMP,
    REGISTRY_INITIAL_VERSION,
    REGISTRY_SCHEMA_VERSION,
    TRUST_MAX,
    TRUST_MIN,
)
from .types import AgentDefinition, OutcomeKind
from .utils import as_float, as_int, atomic_write_text, clamp, iso_now, normalize_agent_id, normalize_tag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrustUpdate:
    agent_id: str
    outcome: str
    magnitude: float
    rate: float
    previous: float
    updated: float

    @property
    def delta(self) -> float:
        return self.updated - self.previous

    def as_dict(self) -> Dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "outcome": self.outcome,
            "magnitude": self.magnitude,
            "rate": self.rate,
            "previous": self.previous,
            "updated": self.updated,
        }


def _normalize_agent_state(agent_id: str, value: Any, *, neutral: float) -> Dict[str, Any]:
    source = value if isinstance(value, Mapping) else {}
    return {
        "agent_id": agent_id,
        "role": normalize_tag(source.get("role")) or DEFAULT_ROLE,
        "trust": clamp(as_float(source.get("trust"), default=neutral), TRUST_MIN, TRUST_MAX),
        "updates": max(0, as_int(source.get("updates"), default=0)),
        "absences": max(0, as_int(source.get("absences"), default=0)),
        "active_since_decay": bool(source.get("active_since_decay", False)),
        "calibrated": bool(source.get("calibrated", False)),
    }


def normalize_registry_state(value: Any, *, neutral: float = 0.5) -> Dict[str, Any]:
    source = value if isinstance(value, Mapping) else {}
    agents_raw = source.get("agents")
    agents_input = agents_raw if isinstance(agents_raw, Mapping) else {}
    agents: Dict[str, Dict[str, Any]] = {}
    for raw_id in sorted(agents_input.keys(), key=str):
        agent_id = normalize_agent_id(raw_id)
        if agent_id:
            agents[agent_id] = _normalize_agent_state(agent_id, agents_input.get(raw_id), neutral=neutral)

    history_raw = source.get("history")
    history_input = history_raw if isinstance(history_raw, Mapping) else {}
    history: Dict[str, List[float]] = {}
    for agent_id, agent in agents.items():
        raw_series = history_input.get(agent_id)
        if isinstance(raw_series, Sequence) and not isinstance(raw_series, (str, bytes)) and raw_series:
            history[agent_id] = [
                clamp(as_float(item, default=agent["trust"]), TRUST_MIN, TRUST_MAX) for item in raw_series
            ]
        else:
            history[agent_id] = [agent["trust"]]

    last_updated_raw = source.get("last_updated")
    last_updated = (
        last_updated_raw.strip()
        if isinstance(last_updated_raw, str) and last_updated_raw.strip()
        else REGISTRY_EPOCH_TIMESTAMP
    )
    return {
        "schema_version": REGISTRY_SCHEMA_VERSION,
        "version": max(REGISTRY_INITIAL_VERSION, as_int(source.get("version"), default=REGISTRY_INITIAL_VERSION)),
        "last_updated": last_updated,
        "calibrated": bool(source.get("calibrated", False)),
        "agents": agents,
        "history": history,
    }


class TrustRegistry:
    """Process-wide agent trust scores; every mutation goes through this class."""

    def __init__(self, state: Mapping[str, Any] | None = None, *, config: GovernanceConfig | None = None) -> None:
        self._config = config or GovernanceConfig()
        self._neutral = self._config.neutral_trust
        self._state = normalize_registry_state(state or {}, neutral=self._neutral)
        self._state_lock = threading.Lock()
        self._agent_locks: Dict[str, threading.Lock] = {}

    @classmethod
    def from_definitions(
        cls,
        definitions: Iterable[AgentDefinition | Mapping[str, Any]],
        *,
        config: GovernanceConfig | None = None,
    ) -> "TrustRegistry":
        registry = cls(config=config)
        for value in definitions:
            if isinstance(value, AgentDefinition):
                registry.register(value.agent_id, value.role)
            elif isinstance(value, Mapping):
                registry.register(str(value.get("agent_id", "")), str(value.get("role", DEFAULT_ROLE)))
        return registry

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any], *, config: GovernanceConfig | None = None) -> "TrustRegistry":
        return cls(snapshot, config=config)

    @property
    def version(self) -> int:
        return int(self._state["version"])

    @property
    def last_updated(self) -> str:
        return str(self._state["last_updated"])

    @property
    def is_calibrated(self) -> bool:
        return bool(self._state["calibrated"])

    @property
    def agent_ids(self) -> List[str]:
        with self._state_lock:
            return sorted(self._state["agents"].keys())

    def has_agent(self, agent_id: str) -> bool:
        return normalize_agent_id(agent_id) in self._state["agents"]

    def register(self, agent_id: str, role: str = DEFAULT_ROLE) -> None:
        normalized = normalize_agent_id(agent_id)
        if not normalized:
            return
        with self._state_lock:
            agent = self._ensure_agent_locked(normalized)
            agent["role"] = normalize_tag(role) or DEFAULT_ROLE

    def role_of(self, agent_id: str) -> str:
        agent = self._state["agents"].get(normalize_agent_id(agent_id))
        if not agent:
            return DEFAULT_ROLE
        return str(agent.get("role", DEFAULT_ROLE))

    def get_trust(self, agent_id: str) -> float:
        agent = self._state["agents"].get(normalize_agent_id(agent_id))
        if not agent:
            return self._neutral
        return float(agent["trust"])

    def trust_snapshot(self) -> Dict[str, float]:
        with self._state_lock:
            return {agent_id: float(agent["trust"]) for agent_id, agent in sorted(self._state["agents"].items())}

    def absences(self, agent_id: str) -> int:
        agent = self._state["agents"].get(normalize_agent_id(agent_id))
        return int(agent["absences"]) if agent else 0

    def history(self, agent_id: str) -> List[float]:
        with self._state_lock:
            return list(self._state["history"].get(normalize_agent_id(agent_id), []))

    def record_outcome(
        self,
        agent_id: str,
        outcome: OutcomeKind | str,
        magnitude: float = 1.0,
    ) -> Optional[TrustUpdate]:
        """Move the agent's score toward 1.0 (success) or 0.0 (failure) by an EMA step."""
        normalized = normalize_agent_id(agent_id)
        if not normalized:
            return None
        kind = outcome if isinstance(outcome, OutcomeKind) else OutcomeKind(normalize_tag(outcome))
        target = TRUST_MAX if kind is OutcomeKind.SUCCESS else TRUST_MIN
        effective_magnitude = max(0.0, as_float(magnitude, default=1.0))
        rate = clamp(self._config.learning_rate * effective_magnitude, 0.0, 1.0)

        with self._lock_for(normalized):
            with self._state_lock:
                agent = self._ensure_agent_locked(normalized)
                previous = float(agent["trust"])
            updated = clamp(previous + rate * (target - previous), TRUST_MIN, TRUST_MAX)
            with self._state_lock:
                agent["trust"] = updated
                agent["updates"] = int(agent["updates"]) + 1
                agent["active_since_decay"] = True
                self._state["history"].setdefault(normalized, []).append(updated)
                self._bump_version_locked()

        logger.debug("trust %s %s: %.4f -> %.4f", normalized, kind.value, previous, updated)
        return TrustUpdate(
            agent_id=normalized,
            outcome=kind.value,
            magnitude=effective_magnitude,
            rate=rate,
            previous=previous,
            updated=updated,
        )

    def record_absence(self, agent_id: str, reason: str = "timeout") -> None:
        """Count a non-vote. The score is left untouched."""
        normalized = normalize_agent_id(agent_id)
        if not normalized:
            return
        with self._lock_for(normalized):
            with self._state_lock:
                agent = self._ensure_agent_locked(normalized)
                agent["absences"] = int(agent["absences"]) + 1
        logger.info("agent %s did not vote (%s)", normalized, reason)

    def calibrate(self, samples: Mapping[str, Sequence[Any]], *, force: bool = False) -> Dict[str, float]:
        """Seed baselines for agents with no live history from held-out evaluations.

        Runs once per registry lifetime unless ``force`` is set. Agents that already
        carry outcome updates keep their learned score unless ``force`` is set.
        """
        if self.is_calibrated and not force:
            return {}
        baselines: Dict[str, float] = {}
        for raw_id, evaluations in samples.items():
            agent_id = normalize_agent_id(raw_id)
            values = [clamp(as_float(item, default=0.0), 0.0, 1.0) for item in (evaluations or [])]
            if not agent_id or not values:
                continue
            baseline = sum(values) / float(len(values))
            with self._lock_for(agent_id):
                with self._state_lock:
                    agent = self._ensure_agent_locked(agent_id)
                    if int(agent["updates"]) > 0 and not force:
                        continue
                    agent["trust"] = baseline
                    agent["calibrated"] = True
                    self._state["history"][agent_id] = [baseline]
            baselines[agent_id] = baseline
        with self._state_lock:
            self._state["calibrated"] = True
            self._bump_version_locked()
        return baselines

    def apply_decay(self) -> Dict[str, float]:
        """Pull every agent idle since the last decay one step toward neutral."""
        step = self._config.decay_step
        decayed: Dict[str, float] = {}
        for agent_id in self.agent_ids:
            with self._lock_for(agent_id):
                with self._state_lock:
                    agent = self._state["agents"][agent_id]
                    if agent["active_since_decay"]:
                        agent["active_since_decay"] = False
                        continue
                    current = float(agent["trust"])
                    if current > self._neutral:
                        updated = max(self._neutral, current - step)
                    else:
                        updated = min(self._neutral, current + step)
                    if updated == current:
                        continue
                    agent["trust"] = updated
                    self._state["history"].setdefault(agent_id, []).append(updated)
                    decayed[agent_id] = updated
        if decayed:
            with self._state_lock:
                self._bump_version_locked()
        return decayed

    def snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            return normalize_registry_state(self._state, neutral=self._neutral)

    def _lock_for(self, agent_id: str) -> threading.Lock:
        with self._state_lock:
            lock = self._agent_locks.get(agent_id)
            if lock is None:
                lock = threading.Lock()
                self._agent_locks[agent_id] = lock
            return lock

    def _ensure_agent_locked(self, agent_id: str) -> Dict[str, Any]:
        agents = self._state["agents"]
        agent = agents.get(agent_id)
        if agent is None:
            agent = _normalize_agent_state(agent_id, {}, neutral=self._neutral)
            agents[agent_id] = agent
            self._state["history"][agent_id] = [agent["trust"]]
        return agent

    def _bump_version_locked(self) -> None:
        self._state["version"] = int(self._state["version"]) + 1
        self._state["last_updated"] = iso_now()


class TrustRegistryStore:
    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return normalize_registry_state({})
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception:
            logger.warning("Trust registry file %s unreadable; starting from neutral state", self._path)
            return normalize_registry_state({})
        return normalize_registry_state(raw)

    def load_registry(self, *, config: GovernanceConfig | None = None) -> TrustRegistry:
        return TrustRegistry.from_snapshot(self.load(), config=config)

    def save_atomic(self, state: Mapping[str, Any] | TrustRegistry) -> Dict[str, Any]:
        raw = state.snapshot() if isinstance(state, TrustRegistry) else state
        normalized = normalize_registry_state(raw)
        atomic_write_text(self._path, json.dumps(normalized, ensure_ascii=True, sort_keys=True, indent=2))
        return normalized
