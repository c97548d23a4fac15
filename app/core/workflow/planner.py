"""Workflow Planner that turns a research goal into an ordered step list.

The Planner first tries the predefined YAML templates. If none fits, it
either asks the LLM for a plan or, in ``rule`` mode, builds a deterministic
search-then-summarize plan. Planning has no side effects; any failure is
raised as ``PlanningError`` so that no run is created.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from app.core.config import settings
from app.core.logging import logger
from app.core.workflow.errors import (
    PlanningError,
    PlanRequestError,
)
from app.core.workflow.prompts import build_planning_prompt
from app.core.workflow.schema import (
    DEPTH_CONFIG,
    Depth,
    OutputFormat,
    SearchSource,
    StepDefinition,
    StepType,
    WorkflowPlan,
    params_error,
    remap_references,
)
from app.core.workflow.templates import (
    WorkflowTemplateRegistry,
    extract_topic,
    workflow_template_registry,
)
from app.services.llm import (
    LLMService,
    llm_service,
)

PLANNER_MODES = ("llm", "rule")
_STEP_TYPES = {t.value for t in StepType}
DEFAULT_SOURCES = ["google"]

_SOURCE_LABELS = {
    SearchSource.GOOGLE.value: "the web",
    SearchSource.WEB.value: "the web",
    SearchSource.GITHUB.value: "GitHub",
    SearchSource.PEXELS.value: "Pexels",
}


class WorkflowPlanner:
    """Plans research workflows from templates, the LLM, or fixed rules.

    Priority order:
    1. The template named by ``template_id``, if given
    2. The best matching YAML template with enough confidence
    3. The configured planning backend (``llm`` or ``rule``)
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        template_registry: Optional[WorkflowTemplateRegistry] = None,
        mode: Optional[str] = None,
    ):
        """Initialize the WorkflowPlanner.

        Args:
            llm: LLM client for dynamic planning.
            template_registry: Registry of YAML templates.
            mode: ``llm`` or ``rule``. Defaults to ``settings.WORKFLOW_PLANNER``.
        """
        self.llm_service = llm or llm_service
        self.template_registry = template_registry or workflow_template_registry
        self.mode = mode or settings.WORKFLOW_PLANNER
        if self.mode not in PLANNER_MODES:
            raise ValueError(f"Unknown planner mode: {self.mode}")

    async def plan(
        self,
        goal: str,
        sources: Optional[List[str]] = None,
        depth: Depth = Depth.STANDARD,
        output_format: OutputFormat = OutputFormat.SUMMARY,
        template_id: Optional[str] = None,
    ) -> WorkflowPlan:
        """Generate a workflow plan for a goal.

        Args:
            goal: Natural-language research goal.
            sources: Search sources the plan may use. Defaults to the matched
                template's sources, else ``["google"]``.
            depth: Research depth.
            output_format: Desired report format.
            template_id: Optional template to use directly.

        Returns:
            WorkflowPlan: A plan with at least one step and contiguous indices.

        Raises:
            PlanningError: If no plan can be produced.
        """
        goal = (goal or "").strip()
        if not goal:
            raise PlanRequestError("Goal must not be empty")

        if template_id:
            return self._plan_from_named_template(goal, template_id, sources, depth, output_format)

        match = self.template_registry.match(goal)
        if match and match.confidence >= settings.TEMPLATE_MATCH_THRESHOLD:
            plan = self.template_registry.build(
                match.template,
                match.topic,
                depth,
                sources or match.template.default_sources,
                output_format,
            )
            if plan:
                logger.info(
                    "workflow_template_matched",
                    template_id=match.template.id,
                    topic=match.topic,
                    confidence=match.confidence,
                    step_count=len(plan.steps),
                )
                return plan

        sources = sources or list(DEFAULT_SOURCES)
        if self.mode == "rule":
            return self._rule_plan(goal, sources, depth)
        return await self._llm_plan(goal, sources, depth, output_format)

    def _plan_from_named_template(
        self,
        goal: str,
        template_id: str,
        sources: Optional[List[str]],
        depth: Depth,
        output_format: OutputFormat,
    ) -> WorkflowPlan:
        """Build the explicitly requested template."""
        template = self.template_registry.get(template_id)
        if template is None:
            raise PlanRequestError(f"Unknown workflow template: {template_id}")

        match = self.template_registry.match(goal)
        if match and match.template.id == template_id:
            topic = match.topic
        else:
            topic = extract_topic(goal) or goal

        plan = self.template_registry.build(
            template, topic, depth, sources or template.default_sources, output_format
        )
        if plan is None:
            raise PlanRequestError(f"Template {template_id} has no search steps for the requested sources")

        logger.info("workflow_template_selected", template_id=template_id, topic=topic, step_count=len(plan.steps))
        return plan

    def _rule_plan(self, goal: str, sources: List[str], depth: Depth) -> WorkflowPlan:
        """Deterministic plan: one search per source, then a summary of all results."""
        searchable = [s for s in sources if s in _SOURCE_LABELS]
        if not searchable:
            raise PlanRequestError(f"None of the sources {sources} can be searched")

        num = DEPTH_CONFIG[depth].max_results
        steps = [
            StepDefinition(
                index=i,
                type=StepType.SEARCH,
                title=f"Search {_SOURCE_LABELS[source]}",
                description=f"Search {_SOURCE_LABELS[source]} for: {goal}",
                params={"source": source, "query": goal, "num": num},
            )
            for i, source in enumerate(searchable)
        ]
        search_indices = list(range(len(steps)))
        steps.append(
            StepDefinition(
                index=len(steps),
                type=StepType.SUMMARIZE,
                title="Summarize findings",
                description="Read the top results and summarize what they say about the goal",
                params={"from_steps": search_indices, "max_pages": 3, "focus": goal},
                depends_on=search_indices,
            )
        )

        plan = WorkflowPlan(
            title=goal[:1].upper() + goal[1:80],
            description=f"Search {', '.join(searchable)} and summarize the findings",
            steps=steps,
            sources=sources,
            reasoning="Rule-based plan",
        )
        logger.info("workflow_plan_generated", mode="rule", step_count=len(plan.steps))
        return plan

    async def _llm_plan(
        self,
        goal: str,
        sources: List[str],
        depth: Depth,
        output_format: OutputFormat,
    ) -> WorkflowPlan:
        """Ask the LLM for a plan and normalize it."""
        if not self.llm_service.is_configured:
            raise PlanningError("No planning model is configured")

        config = DEPTH_CONFIG[depth]
        system_prompt, user_prompt = build_planning_prompt(
            goal=goal,
            sources=sources,
            depth=depth.value,
            output_format=output_format.value,
            max_results=config.max_results,
            max_steps=config.max_steps,
        )

        try:
            plan_data = await self.llm_service.call_json(system_prompt, user_prompt)
        except Exception as e:
            logger.exception("workflow_planning_failed", error=str(e))
            raise PlanningError(f"Failed to plan workflow: {e}") from e

        if not isinstance(plan_data, dict):
            raise PlanningError("Planner returned an invalid plan")

        steps = self._normalize_steps(plan_data.get("steps"), output_format)
        plan = WorkflowPlan(
            title=str(plan_data.get("title") or goal[:80]),
            description=str(plan_data.get("description") or ""),
            steps=steps,
            sources=sources,
            reasoning=str(plan_data.get("reasoning") or "LLM-generated plan"),
        )

        logger.info(
            "workflow_plan_generated",
            mode="llm",
            title=plan.title,
            step_count=len(plan.steps),
            step_types=[s.type.value for s in plan.steps],
        )
        return plan

    def _normalize_steps(self, raw_steps: Any, output_format: OutputFormat) -> List[StepDefinition]:
        """Validate LLM steps, drop unusable ones, close with generate_report, re-index.

        Raises:
            PlanningError: If no valid step remains.
        """
        if not isinstance(raw_steps, list):
            raise PlanningError("Planner returned no steps")

        valid: List[StepDefinition] = []
        index_map: Dict[int, int] = {}
        for position, raw in enumerate(raw_steps):
            if not isinstance(raw, dict):
                continue
            step_type = raw.get("type", "")
            if step_type not in _STEP_TYPES:
                logger.warning("workflow_planner_invalid_step_type", step_type=step_type)
                continue

            old_index = raw.get("index", position)
            if not isinstance(old_index, int):
                old_index = position
            raw_depends_on = raw.get("depends_on", raw.get("dependsOn"))
            depends_on = [i for i in raw_depends_on if isinstance(i, int)] if isinstance(raw_depends_on, list) else []
            step = StepDefinition(
                index=len(valid),
                type=StepType(step_type),
                title=str(raw.get("title") or step_type.replace("_", " ").title()),
                description=str(raw.get("description") or ""),
                params=raw.get("params") if isinstance(raw.get("params"), dict) else {},
                depends_on=depends_on,
            )
            error = params_error(step)
            if error:
                logger.warning("workflow_planner_invalid_step_params", step_type=step_type, error=error)
                continue

            index_map[old_index] = len(valid)
            valid.append(step)

        if not valid:
            raise PlanningError("Planner returned no valid steps")

        steps: List[StepDefinition] = []
        for step in valid:
            params, depends_on = remap_references(step.params, step.depends_on, index_map)
            steps.append(step.model_copy(update={"params": params, "depends_on": depends_on}))

        if steps[-1].type != StepType.GENERATE_REPORT:
            steps.append(
                StepDefinition(
                    index=len(steps),
                    type=StepType.GENERATE_REPORT,
                    title="Generate report",
                    description="Compile all findings into a report",
                    params={"report_format": output_format.value},
                    depends_on=list(range(len(steps))),
                )
            )

        return steps
