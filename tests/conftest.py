"""Shared fixtures: a scripted agent runner and tick-driving helpers."""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from portal_core.interfaces.agent_runner import RunnerUpdate, TaskDescriptor


class ScriptedRunner:
    """Agent runner that replays per-node scripts.

    Nodes without a script report 50% then finish with ``{"node": id}``.
    Nodes listed in ``held`` block until ``release(node_id)``.
    """

    def __init__(self, scripts: Optional[Dict[str, List[RunnerUpdate]]] = None) -> None:
        self.scripts: Dict[str, List[RunnerUpdate]] = dict(scripts or {})
        self.calls: List[TaskDescriptor] = []
        self.cancelled: List[str] = []
        self._gates: Dict[str, asyncio.Event] = {}

    def hold(self, *node_ids: str) -> None:
        for node_id in node_ids:
            self._gates[node_id] = asyncio.Event()

    def release(self, *node_ids: str) -> None:
        for node_id in node_ids:
            self._gates.pop(node_id).set()

    def fail(self, node_id: str, reason: str = "agent crashed") -> None:
        self.scripts[node_id] = [RunnerUpdate.progress(30), RunnerUpdate.failed(reason)]

    def called(self, node_id: str) -> List[TaskDescriptor]:
        return [d for d in self.calls if d.node_id == node_id]

    async def invoke(self, node_id: str, descriptor: TaskDescriptor):
        self.calls.append(descriptor)
        gate = self._gates.get(node_id)
        try:
            if gate is not None:
                await gate.wait()
            script = self.scripts.get(node_id)
            if script is None:
                script = [RunnerUpdate.progress(50), RunnerUpdate.finished({"node": node_id})]
            for update in script:
                yield update
        except asyncio.CancelledError:
            self.cancelled.append(node_id)
            raise


async def drive(
    tick: Callable,
    until: Optional[Callable[[], bool]] = None,
    max_ticks: int = 50,
) -> int:
    """Call ``tick()`` until *until* holds (or *max_ticks*); returns ticks used."""
    for n in range(1, max_ticks + 1):
        await tick()
        if until is not None and until():
            return n
    if until is not None:
        raise AssertionError(f"condition not reached after {max_ticks} ticks")
    return max_ticks


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def drive_ticks():
    return drive


@pytest.fixture
def runner_factory():
    return ScriptedRunner
