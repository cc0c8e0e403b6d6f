"""
Planner and Autonomous Execution Tests

Test list:
1. test_keyword_extraction - Project type, technologies, requirements
2. test_discover - Discovery turn becomes an ExecutionContext
3. test_create_plan_from_json - A valid JSON plan is used as is
4. test_create_plan_retry - Invalid JSON gets the error and another try
5. test_template_fallback - Repeated failure falls back to a template
6. test_execute_task - Goal to finished plan with the autonomous agent
7. test_interrupt_after_discovery - Interrupt during discovery skips planning
"""

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from agent import Agent
from autonomous import AutonomousAgent
from conftest import ScriptedProvider, assistant
from planner import (
    PLAN_TEMPLATES,
    Planner,
    extract_project_type,
    extract_requirements,
    extract_technologies,
    template_steps,
)
from schemas import ExecutionContext, Role, StepStatus, StepType

VALID_PLAN = json.dumps({
    "steps": [
        {"id": "setup", "description": "Create the package", "type": "setup", "priority": 9},
        {"id": "code", "description": "Write calc.py", "type": "implement", "priority": 8,
         "dependencies": ["setup"]},
        {"id": "docs", "description": "Write README", "type": "implement", "priority": 3,
         "dependencies": ["setup", "ghost"]},
    ]
})


@pytest.fixture
def workspace_cwd(temp_workspace, monkeypatch):
    monkeypatch.chdir(temp_workspace)
    return temp_workspace


# =============================================================================
# TEST 1: Keywords
# =============================================================================

def test_keyword_extraction():
    """
    Test 1: Project type, technologies, requirements.
    """
    assert extract_project_type("A Python project using pytest") == "python"
    assert extract_project_type("nothing recognisable") == "generic"
    assert extract_technologies("Flask app with Docker and pytest") == ["flask", "pytest", "docker"]
    assert extract_requirements("Build a calculator") == ["arithmetic operations", "user interface", "error handling"]
    assert extract_requirements("Sort my photos") == []

    react = template_steps("react")
    assert [s.id for s in react] == [row[0] for row in PLAN_TEMPLATES["web"]]
    assert template_steps("cobol")[0].id == "analyze_requirements"
    assert template_steps("python")[0].dependencies == set()

    print("✓ Test 1 passed: Keyword extraction works")


# =============================================================================
# TEST 2: Discovery
# =============================================================================

@pytest.mark.asyncio
async def test_discover(test_config, workspace_cwd):
    """
    Test 2: Discovery turn becomes an ExecutionContext.
    """
    provider = ScriptedProvider([assistant("This is an empty directory. A Python CLI with pytest fits.")])
    planner = Planner(Agent(test_config, provider=provider))

    context = await planner.discover("Create a calculator")

    assert context.project_type == "python"
    assert context.technologies == ["python", "pytest"]
    assert context.requirements[0] == "arithmetic operations"
    assert "empty directory" in context.notes
    assert str(workspace_cwd) in provider.calls[0]["messages"][-1].content

    print("✓ Test 2 passed: Discovery builds the context")


# =============================================================================
# TEST 3: JSON Plan
# =============================================================================

@pytest.mark.asyncio
async def test_create_plan_from_json(test_config, workspace_cwd):
    """
    Test 3: A valid JSON plan is used as is.

    Verifies:
    - JSON inside a markdown fence is extracted
    - Unknown dependencies are dropped
    - The plan records the working directory
    """
    provider = ScriptedProvider([assistant(f"Here is the plan:\n```json\n{VALID_PLAN}\n```")])
    planner = Planner(Agent(test_config, provider=provider))

    plan = await planner.create_plan("Create a calculator", ExecutionContext(project_type="python"))

    assert [s.id for s in plan.steps] == ["setup", "code", "docs"]
    assert plan.get_step("code").dependencies == {"setup"}
    assert plan.get_step("docs").dependencies == {"setup"}
    assert plan.get_step("setup").type == StepType.SETUP
    assert plan.working_directory == str(workspace_cwd)
    assert len(provider.calls) == 1
    assert '"steps"' in provider.calls[0]["messages"][-1].content

    print("✓ Test 3 passed: JSON plans are parsed")


# =============================================================================
# TEST 4: Retry
# =============================================================================

@pytest.mark.asyncio
async def test_create_plan_retry(test_config, workspace_cwd):
    """
    Test 4: Invalid JSON gets the error and another try.
    """
    provider = ScriptedProvider([
        assistant('{"steps": [{"id": "x", "description": "d", "priority": 42}]}'),
        assistant(VALID_PLAN),
    ])
    planner = Planner(Agent(test_config, provider=provider), retries=2)

    plan = await planner.create_plan("Create a calculator", ExecutionContext())

    assert len(plan.steps) == 3
    assert len(provider.calls) == 2
    assert provider.calls[1]["messages"][-1].content.startswith("Your plan could not be used")

    print("✓ Test 4 passed: Invalid plans are retried")


# =============================================================================
# TEST 5: Template Fallback
# =============================================================================

@pytest.mark.asyncio
async def test_template_fallback(test_config, workspace_cwd):
    """
    Test 5: Repeated failure falls back to a template.
    """
    provider = ScriptedProvider([assistant("I would rather just start coding.")])
    planner = Planner(Agent(test_config, provider=provider), retries=1)

    plan = await planner.create_plan("Create a site", ExecutionContext(project_type="html"))

    assert len(provider.calls) == 2
    assert [s.id for s in plan.steps] == [row[0] for row in PLAN_TEMPLATES["web"]]
    assert plan.get_step("test_web_app").dependencies == {"create_html", "create_css", "create_js"}

    print("✓ Test 5 passed: Template plan used as fallback")


# =============================================================================
# TEST 6: Autonomous Execution
# =============================================================================

@pytest.mark.asyncio
async def test_execute_task(test_config, workspace_cwd):
    """
    Test 6: Goal to finished plan with the autonomous agent.

    Verifies:
    - Discovery, planning and every step each get a model turn
    - Steps actually use tools
    - The shell tool shares the scheduler's cancel event
    """
    plan_json = json.dumps({"steps": [
        {"id": "write", "description": "Write hello.py", "type": "implement", "priority": 9},
        {"id": "run", "description": "Run hello.py", "type": "test", "priority": 7, "dependencies": ["write"]},
    ]})

    def respond(messages):
        prompt = messages[-1].content if messages[-1].role == Role.USER else ""
        if "explore and describe the project" in prompt:
            return assistant("Empty directory; a Python script is needed.")
        if "Create an execution plan" in prompt:
            return assistant(plan_json)
        if "Current step: Write hello.py" in prompt:
            return assistant(calls=[("file", {"action": "write", "path": "hello.py", "content": "print('hello')"})])
        if "Current step: Run hello.py" in prompt:
            return assistant("Ran it: printed hello")
        return assistant("Done.")

    agent = Agent(test_config, provider=ScriptedProvider([respond]))
    autonomous = AutonomousAgent(agent)
    assert agent.registry.get_tool("shell").cancel_event is autonomous.cancel_event

    success = await autonomous.execute_task("Write a hello world script")

    assert success is True
    plan = autonomous.current_plan
    assert [s.status for s in plan.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
    assert (workspace_cwd / "hello.py").read_text() == "print('hello')"
    assert plan.context.project_type == "python"

    print("✓ Test 6 passed: Autonomous agent executes a goal")


# =============================================================================
# TEST 7: Interrupt During Discovery
# =============================================================================

@pytest.mark.asyncio
async def test_interrupt_after_discovery(test_config, workspace_cwd):
    """
    Test 7: An interrupt during discovery stops before planning.

    Verifies:
    - execute_task returns False
    - No plan is created
    - interrupt() sets the shared cancel event
    """
    agent = Agent(test_config, provider=ScriptedProvider([assistant("unused")]))
    autonomous = AutonomousAgent(agent)

    async def discover_then_interrupt(goal, conversation_id=None):
        autonomous.interrupt()
        return ExecutionContext(project_type="python")

    autonomous.planner.discover = AsyncMock(side_effect=discover_then_interrupt)
    autonomous.planner.create_plan = AsyncMock()

    success = await autonomous.execute_task("Write a hello world script")

    assert success is False
    assert autonomous.interrupted is True
    assert autonomous.current_plan is None
    autonomous.planner.discover.assert_awaited_once()
    autonomous.planner.create_plan.assert_not_awaited()

    print("✓ Test 7 passed: Interrupt after discovery stops the task")
