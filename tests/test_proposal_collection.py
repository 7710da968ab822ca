from __future__ import annotations

import asyncio
import time
import unittest

from concord_governance import Proposal, ProposalCollector


def _payload(proposal_id: str, agent_id: str = "") -> dict:
    raw = {"proposal_id": proposal_id, "payload": "x = 1", "domain": "utils"}
    if agent_id:
        raw["agent_id"] = agent_id
    return raw


class TestProposalCollector(unittest.IsolatedAsyncioTestCase):
    async def test_collects_sync_and_async_sources(self) -> None:
        async def fast():
            return _payload("p-async", "alice")

        def sync():
            return [_payload("p-sync-1"), _payload("p-sync-2")]

        result = await ProposalCollector(timeout_seconds=1.0).collect({"alice": fast, "Bob": sync})
        ids = sorted(item["proposal_id"] for item in result.proposals)
        self.assertEqual(ids, ["p-async", "p-sync-1", "p-sync-2"])
        self.assertEqual({item["agent_id"] for item in result.proposals if item["proposal_id"] != "p-async"}, {"bob"})
        self.assertEqual(result.absent, [])
        self.assertEqual(result.failed, [])

    async def test_slow_source_is_absent(self) -> None:
        async def slow():
            await asyncio.sleep(5)
            return _payload("never")

        async def quick():
            return None

        result = await ProposalCollector(timeout_seconds=0.05).collect({"slow": slow, "quick": quick})
        self.assertEqual(result.absent, ["slow"])
        self.assertEqual(result.proposals, [])
        self.assertEqual(result.non_voters, ["slow"])

    async def test_blocking_sync_source_does_not_hold_the_barrier(self) -> None:
        def stuck():
            time.sleep(0.5)
            return _payload("late")

        async def quick():
            return _payload("p-quick")

        result = await ProposalCollector(timeout_seconds=0.05).collect({"stuck": stuck, "quick": quick})
        self.assertEqual(result.absent, ["stuck"])
        self.assertEqual([item["proposal_id"] for item in result.proposals], ["p-quick"])

    async def test_records_are_stamped_with_their_source(self) -> None:
        async def mallory():
            return [{"proposal_id": "junk", "agent_id": "Alice", "domain": "utils"}, "garbage"]

        result = await ProposalCollector(timeout_seconds=1.0).collect({"mallory": mallory})
        spoofed, junk = result.proposals
        self.assertEqual(spoofed["agent_id"], "mallory")
        self.assertEqual(spoofed["claimed_agent_id"], "alice")
        self.assertEqual(junk, {"agent_id": "mallory", "record": "garbage"})

    async def test_raising_source_is_a_failed_non_vote(self) -> None:
        async def broken():
            raise RuntimeError("model crashed")

        async def fine():
            return Proposal(proposal_id="ok", agent_id="fine", payload="y = 2", domain="utils")

        with self.assertLogs("concord_governance.collection", level="WARNING"):
            result = await ProposalCollector(timeout_seconds=1.0).collect({"broken": broken, "fine": fine})
        self.assertEqual(result.failed, ["broken"])
        self.assertEqual([proposal.proposal_id for proposal in result.proposals], ["ok"])

    async def test_outer_cancellation_cancels_sources(self) -> None:
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def hanging():
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        task = asyncio.create_task(ProposalCollector(timeout_seconds=30.0).collect({"hang": hanging}))
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertTrue(cancelled.is_set())

    async def test_no_sources(self) -> None:
        result = await ProposalCollector(timeout_seconds=1.0).collect({})
        self.assertEqual(result.as_dict(), {"proposal_count": 0, "absent": [], "failed": []})


if __name__ == "__main__":
    unittest.main()
