from __future__ import annotations

import unittest

from concord_governance import (
    ConsensusOutcome,
    ContextualWeighter,
    Decision,
    GlobalState,
    GoalArbiter,
    IntentCache,
    TrustRegistry,
)


def _arbiter(registry: TrustRegistry, cache: IntentCache | None = None) -> GoalArbiter:
    return GoalArbiter(weighter=ContextualWeighter(registry), intent_cache=cache or IntentCache())


def _goal(goal_id: str, agent_id: str, domain: str, reward: float = 10.0, **extra) -> dict:
    goal = {"goal_id": goal_id, "agent_id": agent_id, "objective": f"improve {domain}", "estimated_reward": reward,
            "domain": domain}
    goal.update(extra)
    return goal


class TestGoalArbiter(unittest.TestCase):
    def test_critical_goal_is_penalized(self) -> None:
        registry = TrustRegistry({"agents": {"alice": {"trust": 0.8}}})
        selection = _arbiter(registry).select_goal(
            [_goal("g-pay", "alice", "payments"), _goal("g-perf", "alice", "performance")],
            registry.trust_snapshot(),
        )
        self.assertEqual(selection.winner.goal_id, "g-perf")
        scores = {score.goal_id: score for score in selection.scores}
        self.assertEqual(scores["g-pay"].risk_penalty, 2.0)
        self.assertAlmostEqual(scores["g-perf"].score, 8.0)
        self.assertAlmostEqual(scores["g-pay"].score, 4.0)

    def test_understated_goal_risk_is_still_penalized(self) -> None:
        registry = TrustRegistry({"agents": {"alice": {"trust": 0.8}}})
        selection = _arbiter(registry).select_goal(
            [_goal("g-pii", "alice", "pii", risk_level="low"), _goal("g-safe", "alice", "utils")],
            registry.trust_snapshot(),
        )
        self.assertEqual(selection.winner.goal_id, "g-safe")
        scores = {score.goal_id: score for score in selection.scores}
        self.assertEqual(scores["g-pii"].risk_penalty, 2.0)

    def test_tie_goes_to_earliest_submission(self) -> None:
        registry = TrustRegistry()
        selection = _arbiter(registry).select_goal(
            [_goal("first", "a", "ops"), _goal("second", "b", "ops")],
            registry.trust_snapshot(),
        )
        self.assertEqual(selection.winner.goal_id, "first")

    def test_empty_input_has_no_winner(self) -> None:
        selection = _arbiter(TrustRegistry()).select_goal([], {})
        self.assertIsNone(selection.winner)
        self.assertEqual(selection.scores, [])

    def test_trusted_agent_outweighs_larger_reward(self) -> None:
        registry = TrustRegistry({"agents": {"trusted": {"trust": 0.9}, "shaky": {"trust": 0.2}}})
        selection = _arbiter(registry).select_goal(
            [_goal("big", "shaky", "ops", reward=20.0), _goal("small", "trusted", "ops", reward=10.0)],
            registry.trust_snapshot(),
        )
        self.assertEqual(selection.winner.goal_id, "small")

    def test_intent_alignment_and_priorities(self) -> None:
        registry = TrustRegistry()
        cache = IntentCache()
        cache.abstract_and_cache(
            ConsensusOutcome(
                proposal_id="p1",
                agent_id="a",
                decision=Decision.ACCEPTED,
                weighted_score=0.95,
                confidence=0.95,
                reason="accepted",
                domain="performance",
                novel=True,
            ),
            "Batch writes.",
        )
        arbiter = _arbiter(registry, cache)
        state = GlobalState(domain_priorities={"Performance": 2.0})
        self.assertAlmostEqual(arbiter.intent_alignment(state, "performance"), 2.0 * 1.2375)
        self.assertEqual(arbiter.intent_alignment(state, "ops"), 1.0)

        selection = arbiter.select_goal(
            [_goal("ops", "a", "ops"), _goal("perf", "a", "performance")],
            registry.trust_snapshot(),
            state,
        )
        self.assertEqual(selection.winner.goal_id, "perf")

    def test_specialist_weight_counts(self) -> None:
        registry = TrustRegistry.from_definitions(
            [{"agent_id": "dba", "role": "database_specialist"}, {"agent_id": "gen", "role": "generalist"}]
        )
        selection = _arbiter(registry).select_goal(
            [_goal("gen-db", "gen", "database"), _goal("dba-db", "dba", "database")],
            registry.trust_snapshot(),
        )
        self.assertEqual(selection.winner.goal_id, "dba-db")
        self.assertEqual(selection.as_dict()["winner"]["goal_id"], "dba-db")


if __name__ == "__main__":
    unittest.main()
