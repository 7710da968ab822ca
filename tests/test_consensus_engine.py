from __future__ import annotations

import asyncio
import itertools
import unittest

from concord_governance import (
    ConsensusEngine,
    Decision,
    GlobalState,
    GovernanceConfig,
    QualitySignal,
    RiskLevel,
    RoundCancelledError,
    TaskContext,
    TrustRegistry,
    UnknownEscalationError,
    Verdict,
)

_PATCH = "def add(a, b):\n    return a + b\n"


def _registry(**agents) -> TrustRegistry:
    state = {}
    for agent_id, value in agents.items():
        trust, role = value if isinstance(value, tuple) else (value, "generalist")
        state[agent_id] = {"trust": trust, "role": role}
    return TrustRegistry({"agents": state})


def _proposal(proposal_id: str, agent_id: str, domain: str = "utils", **extra) -> dict:
    raw = {"proposal_id": proposal_id, "agent_id": agent_id, "payload": _PATCH, "domain": domain}
    raw.update(extra)
    return raw


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestConsensusDecisions(unittest.TestCase):
    def test_trusted_agent_with_good_signal_is_accepted(self) -> None:
        registry = _registry(alice=0.8)
        engine = ConsensusEngine(registry=registry)
        [outcome] = engine.decide([_proposal("p1", "alice")], "utils", {"p1": QualitySignal(passed=True, score=0.95)})

        self.assertIs(outcome.decision, Decision.ACCEPTED)
        self.assertAlmostEqual(outcome.weighted_score, 0.76)
        self.assertIs(outcome.risk_level, RiskLevel.LOW)
        self.assertEqual(outcome.required_threshold, 0.6)
        self.assertAlmostEqual(registry.get_trust("alice"), 0.82)

    def test_core_domain_change_is_escalated_without_trust_write(self) -> None:
        registry = _registry(sentinel=(0.95, "security"))
        engine = ConsensusEngine(registry=registry)
        [outcome] = engine.decide([_proposal("p-pii", "sentinel", domain="pii")], "pii", {"p-pii": 1.0})

        self.assertIs(outcome.decision, Decision.ESCALATED)
        self.assertIs(outcome.risk_level, RiskLevel.CRITICAL)
        self.assertEqual(outcome.context_weight, 2.0)
        self.assertEqual(registry.get_trust("sentinel"), 0.95)
        self.assertEqual([item.proposal_id for item in engine.pending_escalations()], ["p-pii"])

    def test_critical_risk_is_never_accepted(self) -> None:
        for trust, quality, role in itertools.product([0.0, 0.5, 1.0], [0.0, 0.5, 1.0], ["generalist", "security"]):
            registry = _registry(agent=(trust, role))
            engine = ConsensusEngine(registry=registry)
            [outcome] = engine.decide(
                [_proposal("p", "agent", domain="payments")],
                TaskContext(domain="payments"),
                {"p": QualitySignal(passed=True, score=quality, confidence=1.0)},
            )
            self.assertIsNot(outcome.decision, Decision.ACCEPTED, (trust, quality, role))
            self.assertIs(outcome.decision, Decision.ESCALATED)

    def test_score_just_below_threshold_is_escalated(self) -> None:
        registry = _registry(bob=0.55)
        engine = ConsensusEngine(registry=registry)
        [outcome] = engine.decide([_proposal("p2", "bob")], "utils", {"p2": 1.0})
        self.assertIs(outcome.decision, Decision.ESCALATED)
        self.assertEqual(registry.get_trust("bob"), 0.55)

    def test_threshold_boundary_accepts(self) -> None:
        registry = _registry(edge=0.6)
        engine = ConsensusEngine(registry=registry)
        [outcome] = engine.decide([_proposal("p3", "edge")], "utils", {"p3": 1.0})
        self.assertIs(outcome.decision, Decision.ACCEPTED)

    def test_weak_score_is_rejected_and_penalized(self) -> None:
        registry = _registry(carl=0.3)
        engine = ConsensusEngine(registry=registry)
        [outcome] = engine.decide([_proposal("p4", "carl")], "utils", {"p4": 0.9})
        self.assertIs(outcome.decision, Decision.REJECTED)
        self.assertAlmostEqual(registry.get_trust("carl"), 0.27)

    def test_failed_sandbox_zeroes_quality(self) -> None:
        registry = _registry(dina=1.0)
        engine = ConsensusEngine(registry=registry)
        [outcome] = engine.decide([_proposal("p5", "dina")], "utils", {"p5": {"passed": False, "score": 0.99}})
        self.assertEqual(outcome.quality, 0.0)
        self.assertIs(outcome.decision, Decision.REJECTED)

    def test_missing_signal_uses_default_quality(self) -> None:
        engine = ConsensusEngine(registry=_registry(eve=1.0))
        [outcome] = engine.decide([_proposal("p6", "eve")], "utils")
        self.assertEqual(outcome.quality, 0.5)
        self.assertAlmostEqual(outcome.weighted_score, 0.5)
        self.assertIs(outcome.decision, Decision.ESCALATED)

    def test_malformed_proposal_is_rejected_with_failure(self) -> None:
        registry = _registry(frank=0.5)
        engine = ConsensusEngine(registry=registry)
        outcomes = engine.decide(
            [{"proposal_id": "bad", "agent_id": "frank", "domain": "utils"}, {"payload": "x", "domain": "utils"}],
            "utils",
        )
        self.assertEqual([outcome.decision for outcome in outcomes], [Decision.REJECTED, Decision.REJECTED])
        self.assertIn("payload", outcomes[0].reason)
        self.assertAlmostEqual(registry.get_trust("frank"), 0.45)
        self.assertEqual(registry.agent_ids, ["frank"])

    def test_resubmitted_proposal_is_rejected(self) -> None:
        registry = _registry(gina=0.9)
        engine = ConsensusEngine(registry=registry)
        engine.decide([_proposal("dup", "gina")], "utils", {"dup": 1.0})
        [again] = engine.decide([_proposal("dup", "gina")], "utils", {"dup": 1.0})
        self.assertIs(again.decision, Decision.REJECTED)

    def test_every_proposal_gets_exactly_one_outcome(self) -> None:
        engine = ConsensusEngine(registry=_registry(a=0.9, b=0.2, c=0.55))
        proposals = [
            _proposal("pa", "a"),
            _proposal("pb", "b"),
            _proposal("pc", "c"),
            _proposal("pd", "a", domain="auth"),
            {"proposal_id": "pe"},
        ]
        outcomes = engine.decide(proposals, "utils", {"pa": 1.0, "pb": 1.0, "pc": 1.0, "pd": 1.0})
        self.assertEqual([outcome.proposal_id for outcome in outcomes], ["pa", "pb", "pc", "pd", "pe"])

    def test_novel_insight_feeds_intent_cache(self) -> None:
        registry = _registry(ivy=0.95)
        engine = ConsensusEngine(registry=registry)
        proposal = _proposal(
            "p-novel",
            "ivy",
            domain="performance",
            hallucination_class="novel_insight",
            rationale="Replace the polling loop with a wakeup queue. Benchmarks attached.",
        )
        [outcome] = engine.decide([proposal], "performance", {"p-novel": {"score": 1.0, "confidence": 0.95}})
        self.assertIs(outcome.decision, Decision.ACCEPTED)
        self.assertEqual(outcome.required_threshold, 0.85)
        intents = engine.intent_cache.retrieve("performance")
        self.assertEqual([intent.principle for intent in intents], ["Replace the polling loop with a wakeup queue."])


    def test_novel_flag_without_novel_insight_class_is_not_cached(self) -> None:
        registry = _registry(jay=0.95)
        engine = ConsensusEngine(registry=registry)
        proposal = _proposal(
            "p-noise",
            "jay",
            domain="performance",
            hallucination_class="noise",
            novel=True,
            rationale="Drop the cache entirely.",
        )
        [outcome] = engine.decide([proposal], "performance", {"p-noise": {"score": 1.0, "confidence": 0.95}})
        self.assertIs(outcome.decision, Decision.ACCEPTED)
        self.assertIs(outcome.risk_level, RiskLevel.LOW)
        self.assertEqual(outcome.required_threshold, 0.6)
        self.assertEqual(engine.intent_cache.retrieve("performance"), [])

    def test_evaluate_scores_without_writing(self) -> None:
        registry = _registry(kay=0.8)
        engine = ConsensusEngine(registry=registry)
        before = registry.snapshot()
        [verdict] = engine.evaluate([_proposal("p-eval", "kay")], "utils", {"p-eval": 1.0})
        self.assertIsInstance(verdict, Verdict)
        self.assertIs(verdict.outcome.decision, Decision.ACCEPTED)
        self.assertEqual(verdict.proposal.proposal_id, "p-eval")
        self.assertEqual(registry.snapshot(), before)


class TestEscalationLifecycle(unittest.TestCase):
    def _escalated_engine(self, clock: _Clock | None = None) -> ConsensusEngine:
        config = GovernanceConfig.from_mapping({"escalation_timeout_seconds": 10})
        engine = ConsensusEngine(registry=_registry(hal=0.5), config=config, clock=clock or _Clock())
        engine.decide([_proposal("p-esc", "hal", domain="secrets")], "secrets", {"p-esc": 1.0})
        return engine

    def test_approval_records_deferred_success(self) -> None:
        engine = self._escalated_engine()
        outcome = engine.resolve_escalation("p-esc", True, reviewer="dana")
        self.assertIs(outcome.decision, Decision.ACCEPTED)
        self.assertIn("dana", outcome.reason)
        self.assertAlmostEqual(engine.registry.get_trust("hal"), 0.55)
        self.assertEqual(engine.pending_escalations(), [])

    def test_rejection_records_failure(self) -> None:
        engine = self._escalated_engine()
        outcome = engine.resolve_escalation("p-esc", False)
        self.assertIs(outcome.decision, Decision.REJECTED)
        self.assertAlmostEqual(engine.registry.get_trust("hal"), 0.45)

    def test_unknown_or_resolved_escalation_raises(self) -> None:
        engine = self._escalated_engine()
        with self.assertRaises(UnknownEscalationError):
            engine.resolve_escalation("nope", True)
        engine.resolve_escalation("p-esc", True)
        with self.assertRaises(UnknownEscalationError):
            engine.resolve_escalation("p-esc", True)

    def test_expiry_fails_closed(self) -> None:
        clock = _Clock(1000.0)
        engine = self._escalated_engine(clock)
        self.assertEqual(engine.expire_escalations(now=1005.0), [])
        clock.now = 1010.0
        [expired] = engine.expire_escalations()
        self.assertIs(expired.decision, Decision.REJECTED)
        self.assertAlmostEqual(engine.registry.get_trust("hal"), 0.45)
        self.assertEqual(engine.pending_escalations(), [])

    def test_hooks_receive_new_escalations(self) -> None:
        engine = ConsensusEngine(registry=_registry(ian=0.5))
        received = []
        engine.add_escalation_hook(received.append)
        engine.decide([_proposal("p-h", "ian", domain="crypto")], "crypto", {"p-h": 1.0})
        self.assertEqual([item.proposal_id for item in received], ["p-h"])
        self.assertEqual(received[0].as_dict()["affected_domains"], ["crypto"])

    def test_failing_hook_does_not_break_decision(self) -> None:
        engine = ConsensusEngine(registry=_registry(jay=0.5))

        def broken(_pending) -> None:
            raise RuntimeError("review channel down")

        engine.add_escalation_hook(broken)
        with self.assertLogs("concord_governance.consensus", level="ERROR"):
            [outcome] = engine.decide([_proposal("p-j", "jay", domain="auth")], "auth", {"p-j": 1.0})
        self.assertIs(outcome.decision, Decision.ESCALATED)
        self.assertEqual(len(engine.pending_escalations()), 1)


class TestConsensusRounds(unittest.IsolatedAsyncioTestCase):
    async def test_timeout_is_neutral(self) -> None:
        registry = _registry(fast=0.8, slow=0.7)
        config = GovernanceConfig.from_mapping({"collection_timeout_seconds": 0.05})
        engine = ConsensusEngine(registry=registry, config=config)

        async def fast():
            return _proposal("p-fast", "fast")

        async def slow():
            await asyncio.sleep(5)
            return _proposal("p-slow", "slow")

        result = await engine.run_round({"fast": fast, "slow": slow}, "utils", quality_signals={"p-fast": 0.95})
        self.assertEqual(result.absent, ["slow"])
        self.assertEqual([outcome.proposal_id for outcome in result.accepted], ["p-fast"])
        self.assertEqual(registry.get_trust("slow"), 0.7)
        self.assertEqual(registry.absences("slow"), 1)

    async def test_foreign_agent_id_is_charged_to_the_source(self) -> None:
        registry = _registry(alice=0.8, mallory=0.5)
        engine = ConsensusEngine(registry=registry)

        async def mallory():
            return _proposal("junk", "alice")

        result = await engine.run_round({"mallory": mallory}, "utils", quality_signals={"junk": 1.0})
        [outcome] = result.outcomes
        self.assertIs(outcome.decision, Decision.REJECTED)
        self.assertEqual(outcome.agent_id, "mallory")
        self.assertIn("claims agent alice", outcome.reason)
        self.assertEqual(registry.get_trust("alice"), 0.8)
        self.assertAlmostEqual(registry.get_trust("mallory"), 0.45)

    async def test_quality_provider_is_awaited(self) -> None:
        registry = _registry(kim=0.9)
        engine = ConsensusEngine(registry=registry)

        async def source():
            return _proposal("p-k", "kim")

        async def sandbox(proposal):
            return QualitySignal(passed=True, score=0.9 if proposal.proposal_id == "p-k" else 0.0)

        result = await engine.run_round({"kim": source}, "utils", quality_provider=sandbox)
        self.assertAlmostEqual(result.outcomes[0].quality, 0.9)
        self.assertIs(result.outcomes[0].decision, Decision.ACCEPTED)

    async def test_cancelled_round_writes_nothing(self) -> None:
        registry = _registry(lee=0.8, mo=0.6)
        config = GovernanceConfig.from_mapping({"collection_timeout_seconds": 0.05})
        engine = ConsensusEngine(registry=registry, config=config)
        cancel = asyncio.Event()
        before = registry.snapshot()

        async def lee():
            cancel.set()
            return _proposal("p-l", "lee")

        async def mo():
            await asyncio.sleep(5)

        with self.assertRaises(RoundCancelledError):
            await engine.run_round({"lee": lee, "mo": mo}, "utils", quality_signals={"p-l": 1.0}, cancel_event=cancel)
        self.assertEqual(registry.snapshot(), before)
        self.assertEqual(engine.pending_escalations(), [])

        cancel.clear()
        result = await engine.run_round({"lee": lambda: _proposal("p-l", "lee")}, "utils", quality_signals={"p-l": 1.0})
        self.assertIs(result.outcomes[0].decision, Decision.ACCEPTED)


class TestGoalNegotiation(unittest.TestCase):
    def test_negotiation_decays_idle_trust_then_selects(self) -> None:
        registry = _registry(nia=0.9, oz=0.9)
        engine = ConsensusEngine(registry=registry)
        engine.decide([_proposal("p-n", "nia")], "utils", {"p-n": 1.0})
        selection = engine.negotiate_goal(
            [
                {"goal_id": "g-oz", "agent_id": "oz", "objective": "speed up", "estimated_reward": 10, "domain": "ops"},
                {"goal_id": "g-nia", "agent_id": "nia", "objective": "speed up", "estimated_reward": 10, "domain": "ops"},
            ],
            GlobalState(),
        )
        self.assertAlmostEqual(registry.get_trust("oz"), 0.88)
        self.assertAlmostEqual(registry.get_trust("nia"), 0.91)
        self.assertEqual(selection.winner.goal_id, "g-nia")
        self.assertEqual(engine.intent_cache.cycle, 1)


if __name__ == "__main__":
    unittest.main()
