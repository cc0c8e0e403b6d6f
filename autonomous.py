"""
Autonomous task execution for Foreman.

WHAT THIS FILE DOES:
-------------------
Runs a goal end to end with no human in the loop:

    goal ──> discovery turn ──> planning turn ──> StepScheduler.run_plan
         ──> summary (logged, plan kept on current_plan for reporting)

One asyncio.Event is shared by the scheduler and the shell tool, so
interrupt() both stops the scheduler before its next wave and aborts any
shell command that is running at the time.
"""

import asyncio
import logging
from typing import Optional

from agent import Agent
from config import SchedulerConfig
from planner import Planner
from scheduler import StepScheduler
from schemas import Plan

logger = logging.getLogger(__name__)


class AutonomousAgent:
    """
    Discovers, plans and executes a goal.

    Example usage:
        autonomous = AutonomousAgent(Agent(config))
        ok = await autonomous.execute_task("Create a Python calculator CLI")
        ui.show_final_summary(autonomous.current_plan)
    """

    def __init__(self, agent: Agent, config: Optional[SchedulerConfig] = None):
        self.agent = agent
        self.config = config or agent.config.scheduler
        self.cancel_event = asyncio.Event()
        self.planner = Planner(agent, retries=self.config.planning_retries)
        self.scheduler = StepScheduler(agent, self.config, cancel_event=self.cancel_event)
        self.current_plan: Optional[Plan] = None

        shell_tool = agent.registry.get_tool("shell")
        if shell_tool is not None:
            shell_tool.cancel_event = self.cancel_event

    def interrupt(self) -> None:
        """Stop after the running wave; running shell commands are aborted."""
        self.scheduler.interrupt()

    @property
    def interrupted(self) -> bool:
        return self.cancel_event.is_set()

    async def execute_task(self, goal: str) -> bool:
        """
        Run a goal to completion.

        Returns:
            True if every step of the plan completed

        Raises:
            ProviderError: If discovery or planning cannot reach the model
            PlanningError: On a dependency cycle with strict_cycles
        """
        self.cancel_event.clear()
        self.current_plan = None
        conversation_id = self.agent.start_new_conversation()
        logger.info("Starting task: %s", goal)

        context = await self.planner.discover(goal, conversation_id=conversation_id)
        if self.interrupted:
            logger.warning("Interrupted after discovery")
            return False

        plan = await self.planner.create_plan(goal, context, conversation_id=conversation_id)
        self.current_plan = plan
        logger.info("Plan %s has %d steps", plan.id, len(plan.steps))

        success = await self.scheduler.run_plan(plan)

        metrics = plan.metrics
        logger.info(
            "Task %s: %d/%d completed, %d failed, %d skipped (%.0f%%)",
            "succeeded" if success else "failed",
            metrics.completed, metrics.total, metrics.failed, metrics.skipped,
            plan.success_rate,
        )
        return success
