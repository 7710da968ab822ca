"""Consensus engine: turns competing proposals into accepted, rejected or escalated outcomes.

A round is evaluated first and committed afterwards. Evaluation reads the trust
registry but writes nothing; the commit step is the only place where trust moves,
intents are cached and escalations are parked, and it contains no await points,
so a cancelled round leaves no trace.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .arbiter import GoalArbiter, GoalSelection
from .collection import CollectionResult, ProposalCollector, ProposalSource, RoundCancelledError
from .config import GovernanceConfig
from .intent_cache import IntentCache
from .ledger import (
    ENTRY_ABSENCE,
    ENTRY_CALIBRATION,
    ENTRY_DECISION,
    ENTRY_ESCALATION_RESOLVED,
    ENTRY_INTENT_CACHED,
    ENTRY_TRUST_DECAY,
    ENTRY_TRUST_UPDATE,
    GovernanceAuditLedger,
)
from .registry import TrustRegistry, TrustUpdate
from .risk import RiskAssessor
from .types import (
    ConsensusOutcome,
    Decision,
    GlobalState,
    GoalProposal,
    MalformedProposalError,
    OutcomeKind,
    Proposal,
    QualitySignal,
    RiskAssessment,
    RiskLevel,
    TaskContext,
    UnknownEscalationError,
)
from .utils import clamp
from .weighting import ContextualWeighter

logger = logging.getLogger(__name__)

QualityProvider = Callable[[Proposal], Any]
EscalationHook = Callable[["PendingEscalation"], Any]


@dataclass(frozen=True)
class PendingEscalation:
    outcome: ConsensusOutcome
    proposal: Proposal
    assessment: RiskAssessment
    escalated_at: float
    deadline: float

    @property
    def proposal_id(self) -> str:
        return self.outcome.proposal_id

    def as_dict(self) -> Dict[str, object]:
        return {
            "proposal_id": self.outcome.proposal_id,
            "agent_id": self.outcome.agent_id,
            "reason": self.outcome.reason,
            "rationale": self.proposal.rationale,
            "domain": self.proposal.domain,
            "affected_domains": list(self.assessment.affected_domains),
            "complexity": self.assessment.complexity,
            "escalated_at": self.escalated_at,
            "deadline": self.deadline,
            "breakdown": self.outcome.as_dict(),
        }


@dataclass(frozen=True)
class Verdict:
    """A scored proposal that has not been committed yet."""

    outcome: ConsensusOutcome
    proposal: Optional[Proposal] = None
    assessment: Optional[RiskAssessment] = None


@dataclass
class RoundResult:
    outcomes: List[ConsensusOutcome] = field(default_factory=list)
    absent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> List[ConsensusOutcome]:
        return [outcome for outcome in self.outcomes if outcome.decision is Decision.ACCEPTED]

    @property
    def escalated(self) -> List[ConsensusOutcome]:
        return [outcome for outcome in self.outcomes if outcome.decision is Decision.ESCALATED]

    def as_dict(self) -> Dict[str, object]:
        return {
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
            "absent": list(self.absent),
            "failed": list(self.failed),
        }


class ConsensusEngine:
    def __init__(
        self,
        *,
        registry: TrustRegistry,
        intent_cache: IntentCache | None = None,
        weighter: ContextualWeighter | None = None,
        risk_assessor: RiskAssessor | None = None,
        arbiter: GoalArbiter | None = None,
        ledger: GovernanceAuditLedger | None = None,
        config: GovernanceConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or GovernanceConfig()
        self._registry = registry
        self._intent_cache = intent_cache or IntentCache(self._config)
        self._weighter = weighter or ContextualWeighter.from_config(registry, self._config)
        self._risk_assessor = risk_assessor or RiskAssessor(self._config)
        self._arbiter = arbiter or GoalArbiter(
            weighter=self._weighter,
            intent_cache=self._intent_cache,
            risk_assessor=self._risk_assessor,
            config=self._config,
        )
        self._ledger = ledger
        self._clock = clock
        self._collector = ProposalCollector(timeout_seconds=self._config.collection_timeout_seconds)
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingEscalation] = {}
        self._consumed: Set[str] = set()
        self._escalation_hooks: List[EscalationHook] = []

    @property
    def config(self) -> GovernanceConfig:
        return self._config

    @property
    def registry(self) -> TrustRegistry:
        return self._registry

    @property
    def intent_cache(self) -> IntentCache:
        return self._intent_cache

    @property
    def weighter(self) -> ContextualWeighter:
        return self._weighter

    @property
    def risk_assessor(self) -> RiskAssessor:
        return self._risk_assessor

    @property
    def arbiter(self) -> GoalArbiter:
        return self._arbiter

    @property
    def ledger(self) -> Optional[GovernanceAuditLedger]:
        return self._ledger

    def add_escalation_hook(self, hook: EscalationHook) -> None:
        self._escalation_hooks.append(hook)

    def remove_escalation_hook(self, hook: EscalationHook) -> None:
        if hook in self._escalation_hooks:
            self._escalation_hooks.remove(hook)

    def calibrate(self, samples: Mapping[str, Sequence[Any]], *, force: bool = False) -> Dict[str, float]:
        baselines = self._registry.calibrate(samples, force=force)
        if baselines:
            self._audit(ENTRY_CALIBRATION, {"scores": baselines})
        return baselines

    def decide(
        self,
        proposals: Iterable[Proposal | Mapping[str, Any]],
        task_context: Any,
        quality_signals: Mapping[str, Any] | None = None,
    ) -> List[ConsensusOutcome]:
        verdicts = self.evaluate(proposals, task_context, quality_signals)
        self._commit(verdicts)
        return [verdict.outcome for verdict in verdicts]

    def evaluate(
        self,
        proposals: Iterable[Proposal | Mapping[str, Any]],
        task_context: Any,
        quality_signals: Mapping[str, Any] | None = None,
    ) -> List[Verdict]:
        """Score every proposal without touching any state."""
        context = TaskContext.coerce(task_context)
        signals = quality_signals or {}
        seen: Set[str] = set()
        verdicts: List[Verdict] = []
        for raw in proposals:
            try:
                proposal = Proposal.from_mapping(raw)
                with self._lock:
                    consumed = proposal.proposal_id in self._consumed
                if consumed or proposal.proposal_id in seen:
                    raise MalformedProposalError(
                        f"Proposal {proposal.proposal_id} was already submitted.",
                        agent_id=proposal.agent_id,
                        proposal_id=proposal.proposal_id,
                    )
            except MalformedProposalError as exc:
                verdicts.append(Verdict(outcome=self._malformed_outcome(exc)))
                continue
            seen.add(proposal.proposal_id)
            verdicts.append(self._score(proposal, context, QualitySignal.coerce(signals.get(proposal.proposal_id))))
        return verdicts

    async def run_round(
        self,
        sources: Mapping[str, ProposalSource],
        task_context: Any,
        *,
        quality_signals: Mapping[str, Any] | None = None,
        quality_provider: QualityProvider | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RoundResult:
        """Collect proposals from every source behind one timeout barrier, then decide."""
        collected = await self._collector.collect(sources)
        self._raise_if_cancelled(cancel_event)

        signals: Dict[str, Any] = dict(quality_signals or {})
        if quality_provider is not None:
            signals.update(await self._gather_signals(collected, quality_provider, exclude=signals.keys()))
        self._raise_if_cancelled(cancel_event)

        verdicts = self.evaluate(collected.proposals, task_context, signals)
        self._raise_if_cancelled(cancel_event)

        for agent_id in collected.absent:
            self._record_absence(agent_id, "timeout")
        for agent_id in collected.failed:
            self._record_absence(agent_id, "error")
        self._commit(verdicts)
        return RoundResult(
            outcomes=[verdict.outcome for verdict in verdicts],
            absent=list(collected.absent),
            failed=list(collected.failed),
        )

    def pending_escalations(self) -> List[PendingEscalation]:
        with self._lock:
            pending = list(self._pending.values())
        pending.sort(key=lambda item: (item.escalated_at, item.proposal_id))
        return pending

    def get_escalation(self, proposal_id: str) -> Optional[PendingEscalation]:
        with self._lock:
            return self._pending.get(proposal_id)

    def resolve_escalation(self, proposal_id: str, approved: bool, reviewer: str | None = None) -> ConsensusOutcome:
        with self._lock:
            pending = self._pending.pop(proposal_id, None)
        if pending is None:
            raise UnknownEscalationError(proposal_id)

        who = reviewer or "human reviewer"
        if approved:
            outcome = pending.outcome.resolved(Decision.ACCEPTED, f"approved by {who}")
        else:
            outcome = pending.outcome.resolved(Decision.REJECTED, f"rejected by {who}")
        self._audit(ENTRY_ESCALATION_RESOLVED, {"reviewer": who, "outcome": outcome.as_dict()})
        self._apply_outcome(outcome, pending.proposal)
        logger.info("escalation %s resolved: %s by %s", proposal_id, outcome.decision.value, who)
        return outcome

    def expire_escalations(self, now: float | None = None) -> List[ConsensusOutcome]:
        """Reject every escalation whose review window closed without a verdict."""
        current = self._clock() if now is None else float(now)
        with self._lock:
            due = [item for item in self._pending.values() if item.deadline <= current]
            for item in due:
                del self._pending[item.proposal_id]

        expired: List[ConsensusOutcome] = []
        for item in sorted(due, key=lambda entry: (entry.escalated_at, entry.proposal_id)):
            outcome = item.outcome.resolved(Decision.REJECTED, "no human verdict within review window")
            self._audit(ENTRY_ESCALATION_RESOLVED, {"reviewer": None, "outcome": outcome.as_dict()})
            self._apply_outcome(outcome, item.proposal)
            logger.warning("escalation %s expired without verdict; rejected", item.proposal_id)
            expired.append(outcome)
        return expired

    def negotiate_goal(
        self,
        goal_proposals: Iterable[GoalProposal | Mapping[str, Any]],
        global_state: GlobalState | None = None,
    ) -> GoalSelection:
        decayed = self._registry.apply_decay()
        if decayed:
            self._audit(ENTRY_TRUST_DECAY, {"scores": decayed})
        selection = self._arbiter.select_goal(goal_proposals, self._registry.trust_snapshot(), global_state)
        self._intent_cache.advance_cycle()
        if selection.winner is not None:
            logger.info("goal %s selected for next cycle", selection.winner.goal_id)
        return selection

    def _score(self, proposal: Proposal, context: TaskContext, signal: Optional[QualitySignal]) -> Verdict:
        assessment = self._risk_assessor.assess(proposal)
        scoped = TaskContext(
            domain=context.domain or proposal.domain,
            file_category=context.file_category,
            risk_level=assessment.risk_level,
        )
        weight = self._weighter.adjusted_trust(proposal.agent_id, scoped)
        quality = signal.effective_score if signal is not None else self._config.default_quality
        weighted = clamp(weight.adjusted_trust * quality, 0.0, 1.0)
        confidence = signal.confidence if signal is not None and signal.confidence is not None else weighted
        threshold = assessment.required_threshold

        if assessment.risk_level is RiskLevel.CRITICAL:
            decision, reason = Decision.ESCALATED, "critical risk requires human review"
        elif weighted >= threshold:
            decision, reason = Decision.ACCEPTED, "weighted score met required threshold"
        elif weighted >= threshold - self._config.escalation_band:
            decision, reason = Decision.ESCALATED, "weighted score within escalation band"
        else:
            decision, reason = Decision.REJECTED, "weighted score below required threshold"

        outcome = ConsensusOutcome(
            proposal_id=proposal.proposal_id,
            agent_id=proposal.agent_id,
            decision=decision,
            weighted_score=weighted,
            confidence=clamp(confidence, 0.0, 1.0),
            reason=reason,
            domain=proposal.domain,
            novel=proposal.is_novel_insight,
            base_trust=weight.base_trust,
            context_weight=weight.multiplier,
            adjusted_trust=weight.adjusted_trust,
            quality=quality,
            risk_level=assessment.risk_level,
            required_threshold=threshold,
        )
        return Verdict(outcome=outcome, proposal=proposal, assessment=assessment)

    @staticmethod
    def _malformed_outcome(error: MalformedProposalError) -> ConsensusOutcome:
        return ConsensusOutcome(
            proposal_id=error.proposal_id,
            agent_id=error.agent_id,
            decision=Decision.REJECTED,
            weighted_score=0.0,
            confidence=0.0,
            reason=f"malformed proposal: {error}",
        )

    def _commit(self, verdicts: Sequence[Verdict]) -> None:
        for verdict in verdicts:
            outcome = verdict.outcome
            if outcome.proposal_id:
                with self._lock:
                    self._consumed.add(outcome.proposal_id)
            self._audit(ENTRY_DECISION, outcome.as_dict())
            logger.info(
                "proposal %s from %s: %s (score=%.3f, threshold=%.2f)",
                outcome.proposal_id or "<unidentified>",
                outcome.agent_id or "<unknown>",
                outcome.decision.value,
                outcome.weighted_score,
                outcome.required_threshold,
            )
            if outcome.decision is Decision.ESCALATED and verdict.proposal is not None and verdict.assessment is not None:
                self._park(outcome, verdict.proposal, verdict.assessment)
            else:
                self._apply_outcome(outcome, verdict.proposal)

    def _apply_outcome(self, outcome: ConsensusOutcome, proposal: Optional[Proposal]) -> None:
        if not outcome.agent_id or outcome.decision is Decision.ESCALATED:
            return
        kind = OutcomeKind.SUCCESS if outcome.decision is Decision.ACCEPTED else OutcomeKind.FAILURE
        update = self._registry.record_outcome(outcome.agent_id, kind)
        if update is not None:
            self._audit_trust(update, outcome.proposal_id)
        if outcome.decision is Decision.ACCEPTED and proposal is not None and proposal.is_novel_insight:
            intent = self._intent_cache.abstract_and_cache(outcome, proposal.rationale)
            if intent is not None and intent.source_proposal_id == outcome.proposal_id:
                self._audit(ENTRY_INTENT_CACHED, intent.as_dict())

    def _park(self, outcome: ConsensusOutcome, proposal: Proposal, assessment: RiskAssessment) -> None:
        escalated_at = self._clock()
        pending = PendingEscalation(
            outcome=outcome,
            proposal=proposal,
            assessment=assessment,
            escalated_at=escalated_at,
            deadline=escalated_at + self._config.escalation_timeout_seconds,
        )
        with self._lock:
            self._pending[outcome.proposal_id] = pending
        for hook in list(self._escalation_hooks):
            try:
                hook(pending)
            except Exception:
                logger.exception("escalation hook failed for %s", outcome.proposal_id)

    def _record_absence(self, agent_id: str, reason: str) -> None:
        self._registry.record_absence(agent_id, reason)
        self._audit(ENTRY_ABSENCE, {"agent_id": agent_id, "reason": reason})

    async def _gather_signals(
        self,
        collected: CollectionResult,
        provider: QualityProvider,
        *,
        exclude: Iterable[str],
    ) -> Dict[str, Any]:
        skip = set(exclude)
        signals: Dict[str, Any] = {}
        for raw in collected.proposals:
            try:
                proposal = Proposal.from_mapping(raw)
            except MalformedProposalError:
                continue
            if proposal.proposal_id in skip:
                continue
            try:
                value = provider(proposal)
                if inspect.isawaitable(value):
                    value = await value
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("validation signal for %s unavailable", proposal.proposal_id, exc_info=True)
                continue
            signals[proposal.proposal_id] = value
        return signals

    def _audit_trust(self, update: TrustUpdate, proposal_id: str) -> None:
        payload = update.as_dict()
        payload["proposal_id"] = proposal_id
        self._audit(ENTRY_TRUST_UPDATE, payload)

    def _audit(self, entry_type: str, payload: Mapping[str, Any]) -> None:
        if self._ledger is not None:
            self._ledger.append(entry_type=entry_type, payload=payload)

    @staticmethod
    def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RoundCancelledError("round cancelled before commit; partial results discarded")
