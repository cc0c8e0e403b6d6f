"""
Planner for Foreman: from a goal to a Plan.

WHAT THIS FILE DOES:
-------------------
Two turns with the model before any work starts:

1. DISCOVERY: the model explores the working directory with its tools and
   describes the project. We pull the project type and technologies out of
   its answer by keyword.
2. PLANNING: the model decomposes the goal into steps and returns them as
   JSON. The JSON is validated against PlanDraft. If it does not validate,
   the model gets the validation error and another chance. If it still
   fails, we fall back to a template plan for the project type.

WHY TEMPLATES:
-------------
Small local models often cannot produce valid structured output. A plan
that is generic but well-formed beats no plan at all.
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError as SchemaValidationError

from agent import Agent
from providers import extract_json_from_text
from schemas import ExecutionContext, Plan, PlanDraft, Step, StepType, get_json_schema
from shell import current_working_directory

logger = logging.getLogger(__name__)

PROJECT_TYPE_KEYWORDS = ["python", "typescript", "javascript", "node", "react", "vue", "angular", "html", "web"]
TECHNOLOGY_KEYWORDS = [
    "python", "javascript", "typescript", "html", "css", "react", "vue", "angular",
    "node", "express", "fastapi", "flask", "django", "pytest", "docker",
]
TEMPLATE_FAMILIES = {
    "python": "python",
    "html": "web",
    "web": "web",
    "react": "web",
    "vue": "web",
    "angular": "web",
    "node": "node",
    "javascript": "node",
    "typescript": "node",
}
REQUIREMENT_HINTS = {
    "calculator": ["arithmetic operations", "user interface", "error handling"],
    "website": ["HTML structure", "CSS styling", "responsive layout"],
    "web page": ["HTML structure", "CSS styling", "responsive layout"],
    "api": ["REST endpoints", "input validation", "error handling"],
    "cli": ["argument parsing", "help output", "exit codes"],
}


# =============================================================================
# TEMPLATE PLANS
# =============================================================================
# (id, description, type, priority, seconds, dependencies, parallel, max_retries, tools)

PLAN_TEMPLATES: dict[str, list[tuple]] = {
    "python": [
        ("discovery_python", "Explore the Python environment and dependencies", StepType.DISCOVERY, 10, 30, [], True, 2, ["shell", "file"]),
        ("setup_structure", "Create the Python project structure", StepType.SETUP, 9, 15, ["discovery_python"], False, 3, ["file"]),
        ("implement_main", "Implement the main functionality", StepType.IMPLEMENT, 8, 60, ["setup_structure"], False, 3, ["file"]),
        ("test_functionality", "Run the program and its tests", StepType.TEST, 7, 30, ["implement_main"], False, 3, ["shell"]),
        ("validate_final", "Final validation and cleanup", StepType.VALIDATE, 6, 20, ["test_functionality"], False, 2, ["shell", "file"]),
    ],
    "web": [
        ("setup_web_structure", "Create the web project structure", StepType.SETUP, 10, 20, [], False, 3, ["file"]),
        ("create_html", "Create the HTML structure", StepType.IMPLEMENT, 9, 30, ["setup_web_structure"], True, 3, ["file"]),
        ("create_css", "Create the CSS styles", StepType.IMPLEMENT, 8, 40, ["setup_web_structure"], True, 3, ["file"]),
        ("create_js", "Add the JavaScript behaviour", StepType.IMPLEMENT, 7, 45, ["create_html"], True, 3, ["file"]),
        ("test_web_app", "Check the web application works", StepType.TEST, 6, 25, ["create_html", "create_css", "create_js"], False, 3, ["shell"]),
    ],
    "node": [
        ("init_node_project", "Initialise the Node.js project", StepType.SETUP, 10, 30, [], False, 3, ["shell", "file"]),
        ("install_dependencies", "Install project dependencies", StepType.SETUP, 9, 60, ["init_node_project"], False, 3, ["shell"]),
        ("implement_core", "Implement the core functionality", StepType.IMPLEMENT, 8, 90, ["install_dependencies"], False, 3, ["file"]),
        ("build_project", "Build the project", StepType.BUILD, 7, 45, ["implement_core"], False, 3, ["shell"]),
        ("test_application", "Test the application", StepType.TEST, 6, 40, ["build_project"], False, 3, ["shell"]),
    ],
    "generic": [
        ("analyze_requirements", "Analyse the requirements", StepType.ANALYZE, 10, 30, [], False, 2, ["file"]),
        ("create_project_structure", "Create the project structure", StepType.SETUP, 9, 25, ["analyze_requirements"], False, 3, ["file"]),
        ("implement_features", "Implement the core features", StepType.IMPLEMENT, 8, 60, ["create_project_structure"], False, 3, ["file"]),
        ("test_and_validate", "Test and validate the result", StepType.TEST, 7, 30, ["implement_features"], False, 3, ["shell"]),
    ],
}


def template_steps(project_type: str) -> list[Step]:
    """Fresh template steps for a project type (generic if unknown)."""
    family = TEMPLATE_FAMILIES.get(project_type.lower(), "generic")
    return [
        Step(
            id=step_id,
            description=description,
            type=step_type,
            priority=priority,
            estimated_duration=seconds,
            dependencies=set(dependencies),
            can_run_in_parallel=parallel,
            max_retries=max_retries,
            tools=list(tools),
        )
        for step_id, description, step_type, priority, seconds, dependencies, parallel, max_retries, tools
        in PLAN_TEMPLATES[family]
    ]


def extract_project_type(content: str) -> str:
    lowered = content.lower()
    for keyword in PROJECT_TYPE_KEYWORDS:
        if keyword in lowered:
            return keyword
    return "generic"


def extract_technologies(content: str) -> list[str]:
    lowered = content.lower()
    return [tech for tech in TECHNOLOGY_KEYWORDS if tech in lowered]


def extract_requirements(goal: str) -> list[str]:
    lowered = goal.lower()
    for hint, requirements in REQUIREMENT_HINTS.items():
        if hint in lowered:
            return list(requirements)
    return []


def steps_from_draft(draft: PlanDraft) -> list[Step]:
    """Convert a validated draft to Steps, dropping dependencies on unknown ids."""
    known = {planned.id for planned in draft.steps}
    steps = []
    for planned in draft.steps:
        unknown = set(planned.dependencies) - known
        if unknown:
            logger.warning("Step %s: ignoring unknown dependencies %s", planned.id, sorted(unknown))
        steps.append(Step(
            id=planned.id,
            description=planned.description,
            type=planned.type,
            priority=planned.priority,
            dependencies=set(planned.dependencies) & known,
            can_run_in_parallel=planned.can_run_in_parallel,
            estimated_duration=planned.estimated_duration,
            tools=planned.tools,
        ))
    return steps


# =============================================================================
# PROMPTS
# =============================================================================

DISCOVERY_PROMPT = """Before planning any work, explore and describe the project.

Goal: {goal}
Working directory: {cwd}

1. Work out the project type and technology stack the goal needs.
2. Look at the existing files in the working directory, if any.
3. Identify required dependencies and tools, and whether they are installed.
4. Note technical constraints.

Use your tools to look around, then summarise what you found."""

PLANNING_PROMPT = """Create an execution plan for this goal.

Goal: {goal}
Project type: {project_type}
Technologies: {technologies}
Requirements: {requirements}

Break the work into atomic, verifiable steps. Give each step a short unique
id, a type, a priority from 1 (optional) to 10 (critical), and the ids of
the steps it depends on. Mark steps that can safely run at the same time as
others with can_run_in_parallel.

Respond with ONLY a JSON object matching this schema:
{schema}"""

PLAN_RETRY_PROMPT = """Your plan could not be used: {error}

Respond with ONLY a valid JSON object matching the schema. No explanations."""


class Planner:
    """
    Builds a Plan for a goal through an Agent.

    Example usage:
        planner = Planner(agent)
        context = await planner.discover(goal, conversation_id)
        plan = await planner.create_plan(goal, context, conversation_id)
    """

    def __init__(self, agent: Agent, retries: int = 2):
        self.agent = agent
        self.retries = retries

    async def discover(self, goal: str, conversation_id: Optional[str] = None) -> ExecutionContext:
        """Ask the model to explore, then extract context by keyword."""
        logger.info("Discovery: exploring the project")
        prompt = DISCOVERY_PROMPT.format(goal=goal, cwd=current_working_directory().path)
        response = await self.agent.send_message(prompt, conversation_id=conversation_id)

        context = ExecutionContext(
            project_type=extract_project_type(f"{goal}\n{response.content}"),
            technologies=extract_technologies(response.content),
            requirements=extract_requirements(goal),
            notes=response.content,
        )
        logger.info("Discovery: project type %s, technologies %s", context.project_type, context.technologies)
        return context

    def parse_plan_draft(self, content: str) -> PlanDraft:
        """
        Parse a model response into a PlanDraft.

        Raises:
            pydantic.ValidationError: If the JSON is missing or invalid
        """
        return PlanDraft.model_validate_json(extract_json_from_text(content))

    async def create_plan(
        self,
        goal: str,
        context: ExecutionContext,
        conversation_id: Optional[str] = None,
    ) -> Plan:
        """
        Ask the model for a plan, retrying on invalid JSON, else use a template.

        Returns:
            A Plan whose dependencies all reference steps in the plan
        """
        prompt = PLANNING_PROMPT.format(
            goal=goal,
            project_type=context.project_type,
            technologies=", ".join(context.technologies) or "unknown",
            requirements=", ".join(context.requirements) or "none stated",
            schema=json.dumps(get_json_schema(PlanDraft), indent=2),
        )

        steps: Optional[list[Step]] = None
        for attempt in range(self.retries + 1):
            response = await self.agent.send_message(prompt, conversation_id=conversation_id)
            try:
                steps = steps_from_draft(self.parse_plan_draft(response.content))
                break
            except SchemaValidationError as e:
                logger.warning("Plan attempt %d was invalid: %s", attempt + 1, e.errors()[:3])
                prompt = PLAN_RETRY_PROMPT.format(error=e)

        if steps is None:
            logger.warning("Falling back to the %s template plan", context.project_type)
            steps = template_steps(context.project_type)

        return Plan(
            goal=goal,
            context=context,
            steps=steps,
            working_directory=str(current_working_directory().path),
        )
