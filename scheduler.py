"""
Step Scheduler for Foreman.

WHAT THIS FILE DOES:
-------------------
Executes a Plan: groups its steps into dependency-ordered WAVES, runs each
wave concurrently, validates what each step produced, and repairs failures
that matter.

WAVES:
-----
    A ──> B ──> D
     └──> C ──┘

    wave 0: [A]        (no dependencies)
    wave 1: [B, C]     (depend only on A)
    wave 2: [D]        (depends on B and C)

A wave is built by scanning the unscheduled steps in plan order and taking
every step whose dependencies are all already scheduled. If a scan finds
nothing while steps remain, the remaining steps form a dependency cycle.
By default we log a warning and force them into one final wave so the plan
still terminates; with strict_cycles the scheduler raises PlanningError
instead.

EXECUTION:
---------
- Every step of a wave runs concurrently (asyncio.gather); the wave waits
  for all of them, and one failing never cancels another.
- Each step is one interaction-loop turn in its own conversation.
- A result is accepted by a heuristic per step type (see validate_step_result).
- Failed steps below the priority threshold just stay failed. Failed steps
  at or above it get a repair turn; if any stays failed, the plan stops and
  every step not yet run is marked skipped.
- interrupt() sets the cancel event. It is checked between waves, and shell
  commands watching the same event are torn down immediately.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Protocol

from config import SchedulerConfig
from errors import ConfigError, PlanningError, SecurityDenied
from schemas import ExecutionEvent, Message, Plan, Role, Step, StepStatus, StepType
from shell import WorkingDirectory, bind_working_directory, unbind_working_directory

logger = logging.getLogger(__name__)

VALIDATION_ERROR_MARKERS = ("error", "failed")


class StepRunner(Protocol):
    """What the scheduler needs from an agent."""

    def start_new_conversation(self, make_current: bool = True) -> str: ...

    async def send_message(
        self,
        content: str,
        conversation_id: Optional[str] = None,
        transcript: Optional[list[Message]] = None,
    ) -> Message: ...


# =============================================================================
# SECTION 1: WAVE CONSTRUCTION
# =============================================================================

def build_waves(steps: list[Step], strict_cycles: bool = False) -> tuple[list[list[Step]], bool]:
    """
    Group steps into dependency-ordered waves.

    Args:
        steps: Steps in plan order
        strict_cycles: Raise instead of forcing a final wave on a cycle

    Returns:
        (waves, cycle_detected)

    Raises:
        PlanningError: On a cycle when strict_cycles is set
    """
    waves: list[list[Step]] = []
    scheduled: set[str] = set()
    remaining = list(steps)
    cycle_detected = False

    while remaining:
        wave = [step for step in remaining if step.dependencies <= scheduled]
        if not wave:
            cycle_ids = [step.id for step in remaining]
            if strict_cycles:
                raise PlanningError(f"Dependency cycle detected among steps: {cycle_ids}")
            logger.warning("Dependency cycle detected among %s; running them as one final wave", cycle_ids)
            cycle_detected = True
            wave = list(remaining)

        waves.append(wave)
        scheduled.update(step.id for step in wave)
        remaining = [step for step in remaining if step.id not in scheduled]

    return waves, cycle_detected


# =============================================================================
# SECTION 2: VALIDATION
# =============================================================================

def validate_step_result(step: Step, mode: str = "keyword") -> bool:
    """
    Decide whether a step's output counts as success.

    keyword mode:
        build/test      -> output mentions neither "error" nor "failed"
        implement/setup -> output is non-empty
        anything else   -> accepted
    exit_code mode:
        build/test use the shell exit codes seen during the step when there
        are any (all must be 0), else fall back to keyword mode.
    """
    result = step.result or ""

    if step.type in (StepType.BUILD, StepType.TEST):
        if mode == "exit_code" and step.exit_codes:
            return all(code == 0 for code in step.exit_codes)
        lowered = result.lower()
        return not any(marker in lowered for marker in VALIDATION_ERROR_MARKERS)

    if step.type in (StepType.IMPLEMENT, StepType.SETUP):
        return bool(result.strip())

    return True


def collect_exit_codes(messages: list[Message]) -> list[int]:
    """Exit codes of shell results found in a turn's messages."""
    codes = []
    for message in messages:
        if message.role != Role.ASSISTANT or not message.tool_results:
            continue
        for result in message.tool_results:
            payload = result.result
            if isinstance(payload, dict) and "exit_code" in payload and "command" in payload:
                if payload["exit_code"] is not None:
                    codes.append(payload["exit_code"])
                elif payload.get("aborted"):
                    codes.append(-1)
    return codes


# =============================================================================
# SECTION 3: PROMPTS
# =============================================================================

STEP_INSTRUCTIONS = {
    StepType.DISCOVERY: (
        "Carry out discovery:\n"
        "1. Explore the project structure and environment\n"
        "2. Identify existing resources and dependencies\n"
        "3. Note technical constraints\n"
        "4. Collect the information later steps will need"
    ),
    StepType.SETUP: (
        "Set up the project:\n"
        "1. Create the required directory structure\n"
        "2. Initialise configuration files\n"
        "3. Prepare the development environment"
    ),
    StepType.IMPLEMENT: (
        "Implement the code:\n"
        "1. Write clear, maintainable code\n"
        "2. Follow the conventions already used in the project\n"
        "3. Write the files with the file tool and confirm they exist"
    ),
    StepType.BUILD: (
        "Build the project:\n"
        "1. Run the build command\n"
        "2. Check the output for errors\n"
        "3. If the build fails, analyse the error and fix it"
    ),
    StepType.TEST: (
        "Test the work:\n"
        "1. Run the tests or the program\n"
        "2. Check the output matches expectations\n"
        "3. Report the results"
    ),
    StepType.VALIDATE: (
        "Validate the result:\n"
        "1. Check the project is complete\n"
        "2. Confirm every feature works\n"
        "3. Confirm the goal has been met"
    ),
}

STEP_PROMPT = """Plan execution context:
- Goal: {goal}
- Project type: {project_type}
- Working directory: {cwd}
- Current step: {description}
- Step type: {type}
- Priority: {priority}
- Expected tools: {tools}

{instructions}

Focus on: {description}"""

REPAIR_PROMPT = """A step of the plan failed and needs to be fixed.

Goal: {goal}
Project type: {project_type}
Failed step: {description} ({type})
Error: {error}
Last output:
{result}

1. Diagnose the root cause
2. Fix it with your tools
3. Verify the fix and report the outcome"""


def build_step_prompt(step: Step, plan: Plan) -> str:
    instructions = STEP_INSTRUCTIONS.get(
        step.type, f"Carry out this task: {step.description}\nUse your tools as needed and verify the result."
    )
    return STEP_PROMPT.format(
        goal=plan.goal,
        project_type=plan.context.project_type,
        cwd=plan.working_directory,
        description=step.description,
        type=step.type.value,
        priority=step.priority,
        tools=", ".join(step.tools) or "any",
        instructions=instructions,
    )


def build_repair_prompt(step: Step, plan: Plan) -> str:
    return REPAIR_PROMPT.format(
        goal=plan.goal,
        project_type=plan.context.project_type,
        description=step.description,
        type=step.type.value,
        error=step.error or "unknown error",
        result=(step.result or "(no output)")[-2000:],
    )


# =============================================================================
# SECTION 4: SCHEDULER
# =============================================================================

class StepScheduler:
    """
    Runs a Plan wave by wave.

    Example usage:
        scheduler = StepScheduler(agent, config.scheduler)
        success = await scheduler.run_plan(plan)
        print(plan.metrics)
    """

    def __init__(
        self,
        runner: StepRunner,
        config: Optional[SchedulerConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.runner = runner
        self.config = config or SchedulerConfig()
        self.cancel_event = cancel_event if cancel_event is not None else asyncio.Event()

    def interrupt(self) -> None:
        """Stop before the next wave and abort running shell commands."""
        logger.warning("Interrupt requested")
        self.cancel_event.set()

    @property
    def interrupted(self) -> bool:
        return self.cancel_event.is_set()

    def _add_event(self, plan: Plan, event_type: str, step_id: Optional[str], details: str) -> None:
        """Add an event to the plan's timeline."""
        plan.events.append(ExecutionEvent(
            timestamp=datetime.now(),
            event_type=event_type,
            step_id=step_id,
            details=details
        ))

    async def run_plan(self, plan: Plan) -> bool:
        """
        Execute every step of the plan.

        Returns:
            True if no step remains failed and the run was not interrupted

        Raises:
            PlanningError: On a dependency cycle with strict_cycles
            ConfigError, SecurityDenied: Propagated from a step
        """
        plan.started_at = datetime.now()
        plan.metrics.parallel_runs = 0
        plan.refresh_metrics()

        success = False
        try:
            waves, cycle_detected = build_waves(plan.steps, strict_cycles=self.config.strict_cycles)
            if cycle_detected:
                self._add_event(plan, "cycle_detected", None, f"Forced final wave of {len(waves[-1])} steps")
            logger.info("Executing plan %s: %d steps in %d waves", plan.id, len(plan.steps), len(waves))
            success = await self._run_waves(waves, plan)
        finally:
            for step in plan.steps:
                if step.status == StepStatus.PENDING:
                    step.status = StepStatus.SKIPPED
            plan.ended_at = datetime.now()
            plan.refresh_metrics()
            plan.completed = success and plan.metrics.failed == 0

        return plan.completed

    async def _run_waves(self, waves: list[list[Step]], plan: Plan) -> bool:
        threshold = self.config.priority_threshold
        for index, wave in enumerate(waves):
            if self.interrupted:
                self._add_event(plan, "interrupted", None, f"Stopped before wave {index}")
                logger.warning("Plan interrupted before wave %d", index)
                return False

            for step in wave:
                step.wave = index
            self._add_event(plan, "wave_started", None, f"Wave {index}: {[s.id for s in wave]}")
            await self._run_wave(wave, plan)

            critical = [s for s in wave if s.status == StepStatus.FAILED and s.priority >= threshold]
            if critical and not await self.attempt_repair(critical, plan):
                logger.error("Critical step(s) could not be repaired: %s", [s.id for s in critical])
                return False

        return True

    async def _run_wave(self, wave: list[Step], plan: Plan) -> None:
        """Run every step of the wave concurrently; returns once all are terminal."""
        if len(wave) > 1:
            plan.metrics.parallel_runs += 1
        outcomes = await asyncio.gather(
            *(self.execute_step(step, plan) for step in wave),
            return_exceptions=True,
        )
        plan.refresh_metrics()

        hard_failures = [o for o in outcomes if isinstance(o, BaseException)]
        if hard_failures:
            raise hard_failures[0]

    async def execute_step(self, step: Step, plan: Plan) -> bool:
        """
        Run one step as an interaction-loop turn and validate the result.

        Returns:
            True if the step completed

        Raises:
            ConfigError, SecurityDenied: These are not step failures
        """
        step.status = StepStatus.RUNNING
        step.start_time = datetime.now()
        step.conversation_id = self.runner.start_new_conversation(make_current=False)
        self._add_event(plan, "step_started", step.id, step.description)
        logger.info("Step %s started: %s", step.id, step.description)

        token = None
        if self.config.isolate_working_directory:
            token = bind_working_directory(WorkingDirectory(plan.working_directory))
        try:
            transcript: list[Message] = []
            response = await self.runner.send_message(
                build_step_prompt(step, plan),
                conversation_id=step.conversation_id,
                transcript=transcript,
            )
            step.result = response.content
            step.exit_codes = collect_exit_codes(transcript)
        except (ConfigError, SecurityDenied):
            step.status = StepStatus.FAILED
            step.end_time = datetime.now()
            raise
        except Exception as e:
            logger.exception("Step %s raised an error", step.id)
            step.error = str(e) or e.__class__.__name__
            step.status = StepStatus.FAILED
            step.end_time = datetime.now()
            self._add_event(plan, "step_failed", step.id, step.error)
            return False
        finally:
            if token is not None:
                unbind_working_directory(token)

        step.end_time = datetime.now()
        if validate_step_result(step, self.config.validation):
            step.status = StepStatus.COMPLETED
            step.error = None
            self._add_event(plan, "step_completed", step.id, f"{step.duration_seconds:.1f}s")
            logger.info("Step %s completed", step.id)
            return True

        step.status = StepStatus.FAILED
        step.error = f"Step output did not pass {step.type.value} validation"
        self._add_event(plan, "step_failed", step.id, step.error)
        logger.warning("Step %s failed validation", step.id)
        return False

    async def attempt_repair(self, failed: list[Step], plan: Plan) -> bool:
        """
        Give each failed step one repair turn, then re-validate it.

        Steps that used up max_retries are not retried.

        Returns:
            True if every given step is now completed
        """
        logger.info("Attempting to repair %d step(s)", len(failed))
        for step in failed:
            if step.retries >= step.max_retries:
                logger.warning("Step %s has no retries left", step.id)
                continue

            step.retries += 1
            self._add_event(plan, "repair_attempted", step.id, f"Attempt {step.retries}: {step.error}")
            conversation_id = step.conversation_id or self.runner.start_new_conversation(make_current=False)
            try:
                transcript: list[Message] = []
                response = await self.runner.send_message(
                    build_repair_prompt(step, plan),
                    conversation_id=conversation_id,
                    transcript=transcript,
                )
            except (ConfigError, SecurityDenied):
                raise
            except Exception as e:
                logger.error("Repair of step %s failed: %s", step.id, e)
                step.error = str(e) or e.__class__.__name__
                continue

            step.result = response.content
            step.exit_codes = collect_exit_codes(transcript)
            step.end_time = datetime.now()
            if validate_step_result(step, self.config.validation):
                step.status = StepStatus.COMPLETED
                step.error = None
                self._add_event(plan, "step_repaired", step.id, f"Repaired after {step.retries} attempt(s)")
                logger.info("Step %s repaired", step.id)
            else:
                step.error = f"Repair output did not pass {step.type.value} validation"

        plan.refresh_metrics()
        return all(step.status == StepStatus.COMPLETED for step in failed)
