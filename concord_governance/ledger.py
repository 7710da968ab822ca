from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .constants import LEDGER_GENESIS_HASH, NEUTRAL_TRUST
from .registry import normalize_registry_state
from .utils import as_float, canonical_hash, canonical_json, clamp, iso_now, normalize_agent_id

ENTRY_DECISION = "DECISION"
ENTRY_TRUST_UPDATE = "TRUST_UPDATE"
ENTRY_ABSENCE = "ABSENCE"
ENTRY_ESCALATION_RESOLVED = "ESCALATION_RESOLVED"
ENTRY_INTENT_CACHED = "INTENT_CACHED"
ENTRY_TRUST_DECAY = "TRUST_DECAY"
ENTRY_CALIBRATION = "CALIBRATION"


class GovernanceAuditLedger:
    """Append-only, hash-chained JSONL history of governance decisions."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def append(
        self,
        *,
        entry_type: str,
        payload: Mapping[str, Any],
        timestamp: str | None = None,
    ) -> Dict[str, Any]:
        entries = self.read_entries()
        previous_hash = entries[-1]["entry_hash"] if entries else LEDGER_GENESIS_HASH
        record = {
            "seq": len(entries) + 1,
            "entry_type": str(entry_type).strip().upper(),
            "timestamp": str(timestamp or iso_now()),
            "payload": dict(payload),
            "prev_hash": previous_hash,
        }
        persisted = dict(record)
        persisted["entry_hash"] = canonical_hash(record)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(canonical_json(persisted))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        return persisted

    def read_entries(self) -> List[Dict[str, Any]]:
        if not self._path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except Exception:
                continue
            if isinstance(row, Mapping):
                entries.append(dict(row))
        entries.sort(key=lambda row: int(row.get("seq", 0)))
        return entries

    def entries_of(self, entry_type: str) -> List[Dict[str, Any]]:
        wanted = str(entry_type).strip().upper()
        return [entry for entry in self.read_entries() if str(entry.get("entry_type", "")).upper() == wanted]

    def validate_hash_chain(self) -> bool:
        previous_hash = LEDGER_GENESIS_HASH
        for expected_seq, entry in enumerate(self.read_entries(), start=1):
            if int(entry.get("seq", -1)) != expected_seq:
                return False
            record = {
                "seq": int(entry.get("seq", 0)),
                "entry_type": str(entry.get("entry_type", "")).strip().upper(),
                "timestamp": str(entry.get("timestamp", "")),
                "payload": dict(entry.get("payload", {})) if isinstance(entry.get("payload"), Mapping) else {},
                "prev_hash": str(entry.get("prev_hash", "")),
            }
            if record["prev_hash"] != previous_hash:
                return False
            if str(entry.get("entry_hash", "")) != canonical_hash(record):
                return False
            previous_hash = str(entry.get("entry_hash", ""))
        return True

    def reconstruct_trust(self, *, fallback_registry: Mapping[str, Any] | None = None) -> Dict[str, float]:
        """Replay trust-changing entries on top of ``fallback_registry``."""
        state = normalize_registry_state(fallback_registry or {})
        trust = {agent_id: float(agent["trust"]) for agent_id, agent in state["agents"].items()}
        for entry in self.read_entries():
            entry_type = str(entry.get("entry_type", "")).strip().upper()
            payload = entry.get("payload")
            if not isinstance(payload, Mapping):
                continue
            if entry_type == ENTRY_TRUST_UPDATE:
                agent_id = normalize_agent_id(payload.get("agent_id"))
                if agent_id:
                    trust[agent_id] = clamp(as_float(payload.get("updated"), default=NEUTRAL_TRUST), 0.0, 1.0)
            elif entry_type in (ENTRY_TRUST_DECAY, ENTRY_CALIBRATION):
                scores = payload.get("scores")
                if isinstance(scores, Mapping):
                    for raw_id, value in scores.items():
                        agent_id = normalize_agent_id(raw_id)
                        if agent_id:
                            trust[agent_id] = clamp(as_float(value, default=NEUTRAL_TRUST), 0.0, 1.0)
        return dict(sorted(trust.items()))
