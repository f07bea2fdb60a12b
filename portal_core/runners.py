"""Agent Runner adapters.

All of them satisfy ``portal_core.interfaces.IAgentRunner``: ``invoke``
returns an async iterator of ``RunnerUpdate`` values that ends with a
final result or an error.
"""

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from portal_core.interfaces.agent_runner import IAgentRunner, RunnerUpdate, TaskDescriptor

logger = logging.getLogger(__name__)

# report(delta) lets a function runner publish progress while it works
ProgressReporter = Callable[[float], None]
AgentFunction = Callable[[TaskDescriptor, ProgressReporter], Awaitable[Any]]


class FunctionAgentRunner:
    """Wraps an async function as an agent.

    The function receives the descriptor and a ``report(delta)`` callback;
    its return value becomes the node result and an exception becomes a
    runner error.
    """

    def __init__(self, fn: AgentFunction) -> None:
        self._fn = fn

    async def invoke(self, node_id: str, descriptor: TaskDescriptor) -> AsyncIterator[RunnerUpdate]:
        queue: "asyncio.Queue[RunnerUpdate]" = asyncio.Queue()

        def report(delta: float) -> None:
            queue.put_nowait(RunnerUpdate.progress(delta))

        async def _call() -> None:
            try:
                result = await self._fn(descriptor, report)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Agent function for %s failed: %s", node_id, e)
                queue.put_nowait(RunnerUpdate.failed(f"{type(e).__name__}: {e}"))
            else:
                queue.put_nowait(RunnerUpdate.finished(result))

        task = asyncio.create_task(_call())
        try:
            while True:
                update = await queue.get()
                yield update
                if update.final or update.error is not None:
                    return
        finally:
            if not task.done():
                task.cancel()


class SimulatedAgentRunner:
    """Stand-in agent that advances progress in random steps.

    Roots move faster than chained nodes, as in the portal prototype.
    Results echo the node name and the upstream node ids.
    """

    def __init__(
        self,
        step_seconds: float = 0.7,
        root_step: tuple = (10.0, 22.0),
        chained_step: tuple = (6.0, 16.0),
        seed: Optional[int] = None,
    ) -> None:
        self.step_seconds = step_seconds
        self.root_step = root_step
        self.chained_step = chained_step
        self._random = random.Random(seed)

    async def invoke(self, node_id: str, descriptor: TaskDescriptor) -> AsyncIterator[RunnerUpdate]:
        low, high = self.chained_step if descriptor.upstream else self.root_step
        progress = 0.0
        while progress < 100.0:
            await asyncio.sleep(self.step_seconds)
            delta = min(100.0 - progress, self._random.uniform(low, high))
            progress += delta
            if progress < 100.0:
                yield RunnerUpdate.progress(delta)
        yield RunnerUpdate.finished({
            "summary": f"{descriptor.name} complete",
            "agent": descriptor.params.get("agent"),
            "inputs": sorted(descriptor.upstream),
        })


class NullAgentRunner:
    """Fails every node; used when no agent backend is configured."""

    async def invoke(self, node_id: str, descriptor: TaskDescriptor) -> AsyncIterator[RunnerUpdate]:
        yield RunnerUpdate.failed("no agent runner configured")


class RoutingAgentRunner:
    """Dispatches to a runner by ``descriptor.params["agent"]``."""

    def __init__(
        self,
        routes: Optional[Dict[str, IAgentRunner]] = None,
        default: Optional[IAgentRunner] = None,
    ) -> None:
        self._routes: Dict[str, IAgentRunner] = dict(routes or {})
        self._default = default or NullAgentRunner()

    def register(self, agent: str, runner: IAgentRunner) -> None:
        self._routes[agent] = runner

    @property
    def agents(self) -> List[str]:
        return sorted(self._routes)

    def invoke(self, node_id: str, descriptor: TaskDescriptor) -> AsyncIterator[RunnerUpdate]:
        runner = self._routes.get(descriptor.params.get("agent", ""), self._default)
        return runner.invoke(node_id, descriptor)
