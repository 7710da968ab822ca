from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .config import GovernanceConfig
from .constants import INTENT_PRINCIPLE_MAX_CHARS
from .types import ConsensusOutcome, Decision, StrategicIntent
from .utils import as_float, as_int, atomic_write_text, canonical_hash, clamp, iso_now, normalize_tag

logger = logging.getLogger(__name__)

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE = re.compile(r"\s+")

INTENT_SCHEMA_VERSION = 1


def abstract_principle(rationale: str, *, max_chars: int = INTENT_PRINCIPLE_MAX_CHARS) -> str:
    """Reduce a rationale to its leading sentence."""
    text = _WHITESPACE.sub(" ", str(rationale or "")).strip()
    if not text:
        return ""
    principle = _SENTENCE_BREAK.split(text, maxsplit=1)[0]
    if len(principle) <= max_chars:
        return principle
    cut = principle[:max_chars].rsplit(" ", 1)[0].rstrip(",;:")
    return cut + "..."


def _intent_from_mapping(raw: Mapping[str, Any]) -> Optional[StrategicIntent]:
    intent_id = str(raw.get("intent_id") or "").strip()
    principle = str(raw.get("principle") or "").strip()
    if not intent_id or not principle:
        return None
    lifespan_raw = raw.get("lifespan_cycles")
    return StrategicIntent(
        intent_id=intent_id,
        principle=principle,
        confidence=clamp(as_float(raw.get("confidence"), default=0.0), 0.0, 1.0),
        domain=normalize_tag(raw.get("domain")),
        source_proposal_id=str(raw.get("source_proposal_id") or ""),
        source_agent=str(raw.get("source_agent") or ""),
        created_at=str(raw.get("created_at") or ""),
        created_cycle=max(0, as_int(raw.get("created_cycle"), default=0)),
        lifespan_cycles=None if lifespan_raw is None else max(1, as_int(lifespan_raw, default=1)),
        expired=bool(raw.get("expired", False)),
    )


class IntentCache:
    """Strategic principles distilled from accepted novel-insight proposals.

    Entries are never removed: expiry is a flag so the full history stays auditable.
    """

    def __init__(self, config: GovernanceConfig | None = None, *, state: Mapping[str, Any] | None = None) -> None:
        self._config = config or GovernanceConfig()
        self._lock = threading.Lock()
        self._intents: Dict[str, StrategicIntent] = {}
        self._cycle = 0
        if state:
            self._load_state(state)

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def admission_threshold(self) -> float:
        return self._config.intent_admission_threshold

    def admits(self, outcome: ConsensusOutcome) -> bool:
        return (
            outcome.decision is Decision.ACCEPTED
            and outcome.novel
            and outcome.confidence >= self._config.intent_admission_threshold
        )

    def abstract_and_cache(self, outcome: ConsensusOutcome, rationale: str) -> Optional[StrategicIntent]:
        if not self.admits(outcome):
            return None

        domain = normalize_tag(outcome.domain)
        principle = abstract_principle(rationale) or f"Accepted {domain or 'general'} change from {outcome.agent_id}"
        with self._lock:
            for existing in self._intents.values():
                if not existing.expired and existing.domain == domain and existing.principle == principle:
                    return existing

            intent_id = canonical_hash(
                {
                    "domain": domain,
                    "principle": principle,
                    "source_proposal_id": outcome.proposal_id,
                    "cycle": self._cycle,
                }
            )
            intent = StrategicIntent(
                intent_id=intent_id,
                principle=principle,
                confidence=clamp(outcome.confidence, 0.0, 1.0),
                domain=domain,
                source_proposal_id=outcome.proposal_id,
                source_agent=outcome.agent_id,
                created_at=iso_now(),
                created_cycle=self._cycle,
                lifespan_cycles=self._config.intent_lifespan_cycles,
            )
            self._intents[intent_id] = intent

        logger.info("cached strategic intent %s for domain %s", intent_id[:12], domain)
        return intent

    def retrieve(self, domain: str) -> List[StrategicIntent]:
        wanted = normalize_tag(domain)
        with self._lock:
            ordered = list(enumerate(self._intents.values()))
        matches = [(index, intent) for index, intent in ordered if intent.domain == wanted and not intent.expired]
        matches.sort(key=lambda item: (-item[1].confidence, item[1].created_cycle, item[0]))
        return [intent for _, intent in matches]

    def top_confidence(self, domain: str) -> float:
        intents = self.retrieve(domain)
        return intents[0].confidence if intents else 0.0

    def advance_cycle(self) -> List[str]:
        """Start a new evaluation cycle and soft-expire intents whose lifespan ran out."""
        expired: List[str] = []
        with self._lock:
            self._cycle += 1
            for intent_id, intent in self._intents.items():
                if not intent.expired and intent.is_due(self._cycle):
                    self._intents[intent_id] = replace(intent, expired=True)
                    expired.append(intent_id)
        return expired

    def expire(self, intent_id: str) -> bool:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None or intent.expired:
                return False
            self._intents[intent_id] = replace(intent, expired=True)
            return True

    def all_intents(self) -> List[StrategicIntent]:
        with self._lock:
            return list(self._intents.values())

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "schema_version": INTENT_SCHEMA_VERSION,
                "cycle": self._cycle,
                "intents": [intent.as_dict() for intent in self._intents.values()],
            }

    def _load_state(self, state: Mapping[str, Any]) -> None:
        self._cycle = max(0, as_int(state.get("cycle"), default=0))
        intents_raw = state.get("intents")
        if not isinstance(intents_raw, list):
            return
        for raw in intents_raw:
            if not isinstance(raw, Mapping):
                continue
            intent = _intent_from_mapping(raw)
            if intent is not None:
                self._intents[intent.intent_id] = intent


class IntentCacheStore:
    """JSON-backed persistence for the intent cache."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception:
            logger.warning("Intent cache file %s unreadable; starting empty", self.path)
            return {}
        return loaded if isinstance(loaded, dict) else {}

    def load_cache(self, *, config: GovernanceConfig | None = None) -> IntentCache:
        return IntentCache(config, state=self.load())

    def save(self, cache: IntentCache) -> None:
        atomic_write_text(self.path, json.dumps(cache.snapshot(), ensure_ascii=True, indent=2))
