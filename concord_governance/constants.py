from __future__ import annotations

from typing import FrozenSet

TRUST_MIN = 0.0
TRUST_MAX = 1.0
NEUTRAL_TRUST = 0.5

TRUST_LEARNING_RATE = 0.1
TRUST_DECAY_STEP = 0.02

REGISTRY_SCHEMA_VERSION = 1
REGISTRY_INITIAL_VERSION = 1
REGISTRY_EPOCH_TIMESTAMP = "1970-01-01T00:00:00+00:00"

DEFAULT_ROLE = "generalist"
TECHNICAL_ROLES: FrozenSet[str] = frozenset({"architect", "optimizer", "security"})

CONTEXT_MULTIPLIER_MIN = 0.1
CONTEXT_MULTIPLIER_MAX = 3.0
SECURITY_CRITICAL_MULTIPLIER = 2.0
SPECIALIST_MULTIPLIER = 1.8
DOCUMENTATION_SUPPRESSION_MULTIPLIER = 0.5
DOCUMENTATION_DOMAINS: FrozenSet[str] = frozenset({"docs", "documentation", "readme"})

COMPLEXITY_THRESHOLD = 0.7
COMPLEXITY_LINE_BUDGET = 400
COMPLEXITY_ENTROPY_WEIGHT = 0.6
COMPLEXITY_SIZE_WEIGHT = 0.4
CORE_DOMAINS: FrozenSet[str] = frozenset(
    {"auth", "authentication", "crypto", "payments", "pii", "secrets", "security"}
)

LOW_RISK_THRESHOLD = 0.6
ELEVATED_RISK_THRESHOLD = 0.85
CRITICAL_RISK_THRESHOLD = 1.0

ESCALATION_BAND = 0.1
DEFAULT_QUALITY = 0.5
COLLECTION_TIMEOUT_SECONDS = 15.0
ESCALATION_TIMEOUT_SECONDS = 3600.0

INTENT_ADMISSION_THRESHOLD = 0.9
INTENT_PRINCIPLE_MAX_CHARS = 240
INTENT_ALIGNMENT_BONUS = 0.25

CRITICAL_RISK_PENALTY = 2.0
DEFAULT_RISK_PENALTY = 1.0

STABILITY_ROLLING_WINDOW = 5

LEDGER_GENESIS_HASH = "GENESIS"
