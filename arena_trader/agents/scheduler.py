"""
AgentScheduler - one long-lived asyncio task per agent.

Agents share nothing but the read-only risk config; a slow oracle or a
crashing cycle in one task never delays or stops another.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from ..config import RiskConfig
from ..errors import ConfigurationError
from .orchestrator import DecisionCycle

logger = logging.getLogger("arena_trader.agents.scheduler")


class AgentScheduler:

    def __init__(self, cycles: List[DecisionCycle]):
        self.cycles: Dict[str, DecisionCycle] = {c.agent_id: c for c in cycles}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> List[str]:
        """Start every agent that passes its startup checks; returns started ids."""
        self._stop = asyncio.Event()
        started = []
        for agent_id, cycle in self.cycles.items():
            if agent_id in self._tasks:
                continue
            try:
                cycle.check_ready()
            except ConfigurationError:
                continue
            self._tasks[agent_id] = asyncio.create_task(self._run_agent(cycle), name=f"agent:{agent_id}")
            started.append(agent_id)

        halted = [a for a, c in self.cycles.items() if c.status.halted]
        logger.info(f"[Scheduler] Started {len(started)} agents" + (f", halted: {halted}" if halted else ""))
        return started

    async def _run_agent(self, cycle: DecisionCycle):
        interval = cycle.settings.scan_interval_seconds
        loop = asyncio.get_running_loop()
        logger.info(f"[Scheduler] [{cycle.agent_id}] Loop started (every {interval}s)")

        while not self._stop.is_set():
            started = loop.time()
            try:
                await cycle.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[Scheduler] [{cycle.agent_id}] Cycle crashed: {e}")
                cycle.status.record_failure(f"{e.__class__.__name__}: {e}")

            wait = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        logger.info(f"[Scheduler] [{cycle.agent_id}] Loop stopped")

    async def stop(self, timeout: float = 10.0):
        """Signal every loop to finish and wait; stragglers are cancelled."""
        if self._stop is not None:
            self._stop.set()
        tasks = list(self._tasks.values())
        if not tasks:
            return

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("[Scheduler] All agents stopped")

    def replace_risk_config(self, risk_config: RiskConfig):
        risk_config.validate_limits()
        for cycle in self.cycles.values():
            cycle.replace_risk_config(risk_config)

    def status(self) -> List[dict]:
        return [c.status.to_dict() for c in self.cycles.values()]
