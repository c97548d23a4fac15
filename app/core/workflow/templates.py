"""YAML workflow template loader, matcher, and builder.

Scans YAML files from the templates/ directory. Each template describes a
common research pattern: regex patterns and keywords used to recognize a
goal, plus step definitions with ``{topic}``, ``{num}``, ``{num_small}`` and
``{year}`` placeholders. A matched template skips LLM planning entirely.
"""

import os
import re
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

import yaml
from pydantic import (
    BaseModel,
    Field,
)

from app.core.logging import logger
from app.core.workflow.schema import (
    DEPTH_CONFIG,
    Depth,
    OutputFormat,
    StepDefinition,
    StepType,
    WorkflowPlan,
    remap_references,
)

_PLACEHOLDER_RE = re.compile(r"^\{(\w+)\}$")
_LEADING_REQUEST_RE = re.compile(r"^(please|can you|could you|i want to|i need to|help me)\s+", re.IGNORECASE)
_ACTION_WORDS_RE = re.compile(
    r"\b(compare|research|analyze|find|search|explore|create|generate|make)\b", re.IGNORECASE
)
_FORMAT_WORDS_RE = re.compile(r"\b(report|analysis|comparison|summary|for me|about)\b", re.IGNORECASE)

PATTERN_CONFIDENCE = 0.6
KEYWORD_CONFIDENCE = 0.15
MAX_KEYWORD_CONFIDENCE = 0.4
MIN_CANDIDATE_CONFIDENCE = 0.3


class TemplateStep(BaseModel):
    """A step definition inside a template, before placeholders are filled."""

    type: StepType
    title: str
    description: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[int] = Field(default_factory=list)


class WorkflowTemplate(BaseModel):
    """A predefined research workflow loaded from YAML."""

    id: str
    name: str
    description: str = ""
    title: str = "{topic}"
    patterns: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    default_sources: List[str] = Field(default_factory=lambda: ["google"])
    default_format: OutputFormat = OutputFormat.SUMMARY
    steps: List[TemplateStep] = Field(default_factory=list)


class TemplateMatch(BaseModel):
    """Result of matching a goal against the templates."""

    template: WorkflowTemplate
    topic: str
    confidence: float


def _render(value: Any, variables: Dict[str, Any]) -> Any:
    """Fill placeholders in a template value, keeping ints for bare ``{num}``."""
    if isinstance(value, str):
        whole = _PLACEHOLDER_RE.match(value)
        if whole and whole.group(1) in variables:
            return variables[whole.group(1)]
        return value.format_map(variables)
    if isinstance(value, list):
        return [_render(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: _render(item, variables) for key, item in value.items()}
    return value


def extract_topic(goal: str) -> str:
    """Strip request and action words from a goal to approximate its topic."""
    topic = _LEADING_REQUEST_RE.sub("", goal)
    topic = _ACTION_WORDS_RE.sub("", topic)
    topic = _FORMAT_WORDS_RE.sub("", topic)
    return re.sub(r"\s+", " ", topic).strip()


class WorkflowTemplateRegistry:
    """Registry for YAML-defined workflow templates."""

    def __init__(self, templates_dir: Optional[str] = None):
        """Load all templates from ``templates_dir`` (defaults to the bundled templates/)."""
        self.templates_dir = templates_dir or os.path.join(os.path.dirname(__file__), "templates")
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._load_templates()

    def _load_templates(self) -> None:
        """Scan the templates directory and parse all .yaml files."""
        if not os.path.isdir(self.templates_dir):
            logger.warning("workflow_templates_dir_not_found", path=self.templates_dir)
            return

        for filename in sorted(os.listdir(self.templates_dir)):
            if not filename.endswith((".yaml", ".yml")):
                continue

            filepath = os.path.join(self.templates_dir, filename)
            try:
                template = self._parse_template(filepath)
                if template:
                    self._templates[template.id] = template
                    logger.info(
                        "workflow_template_loaded",
                        template_id=template.id,
                        step_count=len(template.steps),
                    )
            except Exception as e:
                logger.exception("workflow_template_parse_failed", file=filename, error=str(e))

    def _parse_template(self, filepath: str) -> Optional[WorkflowTemplate]:
        """Parse a single YAML template file; None if required keys are missing."""
        with open(filepath, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data or "id" not in data or "steps" not in data:
            return None

        template = WorkflowTemplate.model_validate(data)
        for pattern in template.patterns:
            re.compile(pattern)
        return template

    def get(self, template_id: str) -> Optional[WorkflowTemplate]:
        """Get a template by id."""
        return self._templates.get(template_id)

    def list_templates(self) -> List[Dict[str, Any]]:
        """Summaries of all loaded templates."""
        return [
            {
                "id": template.id,
                "name": template.name,
                "description": template.description,
                "default_sources": template.default_sources,
                "default_format": template.default_format.value,
                "step_count": len(template.steps),
            }
            for template in self._templates.values()
        ]

    def match(self, goal: str) -> Optional[TemplateMatch]:
        """Find the template that best fits a goal.

        A regex hit adds 0.6 and each keyword found adds 0.15 (capped at 0.4).
        Candidates need a confidence above 0.3 and a topic longer than two
        characters; the highest confidence wins.

        Args:
            goal: The user's research goal.

        Returns:
            Optional[TemplateMatch]: The best match, or None.
        """
        normalized = goal.strip().lower()
        best: Optional[TemplateMatch] = None

        for template in self._templates.values():
            confidence = 0.0
            topic = ""

            for pattern in template.patterns:
                found = re.search(pattern, goal.strip(), re.IGNORECASE)
                if found:
                    groups = [g.strip() for g in found.groups() if g]
                    if len(groups) >= 2:
                        topic = f"{groups[0]} vs {groups[1]}"
                    else:
                        topic = groups[0] if groups else goal.strip()
                    confidence += PATTERN_CONFIDENCE
                    break

            hits = [kw for kw in template.keywords if kw.lower() in normalized]
            confidence += min(len(hits) * KEYWORD_CONFIDENCE, MAX_KEYWORD_CONFIDENCE)

            if not topic and confidence > 0:
                topic = extract_topic(goal)

            if confidence > MIN_CANDIDATE_CONFIDENCE and len(topic) > 2:
                if best is None or confidence > best.confidence:
                    best = TemplateMatch(template=template, topic=topic, confidence=confidence)

        if best:
            logger.debug(
                "workflow_template_candidate",
                template_id=best.template.id,
                topic=best.topic,
                confidence=best.confidence,
            )
        return best

    def build(
        self,
        template: WorkflowTemplate,
        topic: str,
        depth: Depth = Depth.STANDARD,
        sources: Optional[List[str]] = None,
        output_format: Optional[OutputFormat] = None,
    ) -> Optional[WorkflowPlan]:
        """Instantiate a template for a topic.

        Search steps whose source is not in ``sources`` are dropped and the
        remaining steps are re-indexed with their step references remapped.

        Returns:
            Optional[WorkflowPlan]: The plan, or None when no search step
            survives the source filter.
        """
        num = DEPTH_CONFIG[depth].max_results
        variables = {
            "topic": topic,
            "num": num,
            "num_small": min(num, 5),
            "year": datetime.now(timezone.utc).year,
        }

        rendered = [
            TemplateStep(
                type=step.type,
                title=_render(step.title, variables),
                description=_render(step.description, variables),
                params=_render(step.params, variables),
                depends_on=list(step.depends_on),
            )
            for step in template.steps
        ]

        if output_format and output_format != template.default_format:
            for step in rendered:
                if step.type == StepType.GENERATE_REPORT:
                    step.params["report_format"] = output_format.value

        kept = [
            (old_index, step)
            for old_index, step in enumerate(rendered)
            if step.type != StepType.SEARCH or sources is None or step.params.get("source") in sources
        ]
        if sources is not None and not any(step.type == StepType.SEARCH for _, step in kept):
            logger.info("workflow_template_no_usable_sources", template_id=template.id, sources=sources)
            return None

        index_map = {old: new for new, (old, _) in enumerate(kept)}
        steps = [self._reindex(step, new_index, index_map) for new_index, (_, step) in enumerate(kept)]

        return WorkflowPlan(
            title=_render(template.title, variables),
            description=template.description,
            steps=steps,
            sources=list(sources) if sources is not None else list(template.default_sources),
            template_id=template.id,
            reasoning=f"Matched template: {template.name}",
        )

    @staticmethod
    def _reindex(step: TemplateStep, new_index: int, index_map: Dict[int, int]) -> StepDefinition:
        """Give a step its new index and point its references at surviving steps."""
        params, depends_on = remap_references(step.params, step.depends_on, index_map)
        return StepDefinition(
            index=new_index,
            type=step.type,
            title=step.title,
            description=step.description,
            params=params,
            depends_on=depends_on,
        )


# Global singleton
workflow_template_registry = WorkflowTemplateRegistry()
