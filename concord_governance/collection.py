from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Union

from .types import CLAIMED_AGENT_FIELD, Proposal
from .utils import normalize_agent_id

logger = logging.getLogger(__name__)

ProposalSource = Callable[[], Union[Awaitable[Any], Any]]


class RoundCancelledError(Exception):
    """The surrounding evolution cycle aborted the round; nothing was recorded."""


@dataclass
class CollectionResult:
    proposals: List[Any] = field(default_factory=list)
    absent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def non_voters(self) -> List[str]:
        return sorted(set(self.absent) | set(self.failed))

    def as_dict(self) -> Dict[str, object]:
        return {
            "proposal_count": len(self.proposals),
            "absent": list(self.absent),
            "failed": list(self.failed),
        }


class ProposalCollector:
    """Fan out to every proposal source at once and close a timeout barrier."""

    def __init__(self, *, timeout_seconds: float) -> None:
        self._timeout = max(0.0, float(timeout_seconds))

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def collect(self, sources: Mapping[str, ProposalSource]) -> CollectionResult:
        agent_ids = [normalize_agent_id(agent_id) for agent_id in sources.keys()]
        tasks: Dict[str, asyncio.Task[Any]] = {}
        for agent_id, source in zip(agent_ids, sources.values()):
            tasks[agent_id] = asyncio.create_task(_invoke(source), name=f"proposal-{agent_id}")

        result = CollectionResult()
        if not tasks:
            return result

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self._timeout)
        except asyncio.CancelledError:
            await _cancel_all(tasks.values())
            raise

        if pending:
            await _cancel_all(pending)

        for agent_id, task in tasks.items():
            if task in pending:
                result.absent.append(agent_id)
                continue
            if task.cancelled():
                result.failed.append(agent_id)
                continue
            error = task.exception()
            if error is not None:
                logger.warning("proposal source %s raised %s: %s", agent_id, type(error).__name__, error)
                result.failed.append(agent_id)
                continue
            result.proposals.extend(_attribute(agent_id, item) for item in _flatten(task.result()))
        return result


async def _invoke(source: ProposalSource) -> Any:
    if inspect.iscoroutinefunction(source):
        return await source()
    value = await asyncio.to_thread(source)
    if inspect.isawaitable(value):
        value = await value
    return value


async def _cancel_all(tasks: Any) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def _flatten(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (Proposal, Mapping)):
        return [value]
    if isinstance(value, (list, tuple)):
        return [item for item in value if item is not None]
    return [value]


def _attribute(agent_id: str, item: Any) -> Any:
    """Stamp the producing source onto a record; a foreign agent id is kept as a claim."""
    if isinstance(item, Proposal):
        if item.agent_id == agent_id:
            return item
        item = item.as_dict()
    if not isinstance(item, Mapping):
        return {"agent_id": agent_id, "record": item}
    attributed = dict(item)
    claimed = normalize_agent_id(attributed.get("agent_id"))
    if claimed and claimed != agent_id:
        attributed[CLAIMED_AGENT_FIELD] = claimed
    attributed["agent_id"] = agent_id
    return attributed
