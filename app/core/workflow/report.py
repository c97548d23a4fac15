"""Report synthesis for completed workflows.

The LLM writes a structured report from the accumulated step outputs. When
no model is configured, or its answer is unusable, the report is assembled
directly from the outputs so that every completed run has an artifact.
"""

import json
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import ValidationError

from app.core.logging import logger
from app.core.workflow.prompts import build_synthesis_prompt
from app.core.workflow.schema import (
    ReportOutput,
    ReportSection,
    SectionType,
    StepType,
)
from app.services.llm import (
    LLMService,
    llm_service,
)

MAX_LIST_ITEMS = 10
MAX_TABLE_COLUMNS = 6


def _cell(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return "" if value is None else str(value)


def _search_items(results: List[Dict[str, Any]]) -> List[str]:
    items = []
    for hit in results[:MAX_LIST_ITEMS]:
        label = hit.get("title") or hit.get("full_name") or hit.get("name") or hit.get("id", "")
        url = hit.get("url", "")
        items.append(f"{label} ({url})" if url else str(label))
    return items


def _sections_for(step_type: str, title: str, data: Dict[str, Any]) -> List[ReportSection]:
    """Turn one step output into report sections."""
    if step_type == StepType.SEARCH.value:
        items = _search_items(data.get("results", []))
        return [ReportSection(type=SectionType.LIST, title=title, content={"items": items})] if items else []

    if step_type == StepType.EXTRACT.value:
        records = [r for r in data.get("extracted", []) if isinstance(r, dict)]
        if not records:
            return []
        headers: List[str] = []
        for record in records:
            for key in record:
                if key not in headers and len(headers) < MAX_TABLE_COLUMNS:
                    headers.append(key)
        rows = [[_cell(record.get(h)) for h in headers] for record in records]
        return [ReportSection(type=SectionType.TABLE, title=title, content={"headers": headers, "rows": rows})]

    if step_type == StepType.ANALYZE.value:
        sections = []
        if data.get("summary"):
            sections.append(ReportSection(type=SectionType.TEXT, title=title, content=data["summary"]))
        insights = [f.get("insight", "") for f in data.get("findings", []) if isinstance(f, dict)]
        insights += data.get("recommendations", [])
        if insights:
            sections.append(
                ReportSection(type=SectionType.LIST, title="Key insights", content={"items": insights})
            )
        return sections

    if step_type == StepType.AGGREGATE.value:
        items = [
            _cell(item.get("title") or item.get("name") or item) if isinstance(item, dict) else _cell(item)
            for item in data.get("aggregated_data", [])[:MAX_LIST_ITEMS]
        ]
        return [ReportSection(type=SectionType.LIST, title=title, content={"items": items})] if items else []

    if step_type == StepType.SUMMARIZE.value:
        sections = [ReportSection(type=SectionType.TEXT, title=title, content=data.get("summary", ""))]
        if data.get("key_points"):
            sections.append(
                ReportSection(type=SectionType.LIST, title="Key points", content={"items": data["key_points"]})
            )
        return sections

    if step_type == StepType.GENERATE_IMAGE.value:
        images = data.get("images", [])
        return [ReportSection(type=SectionType.LIST, title=title, content={"items": images})] if images else []

    return []


def assemble_report(title: str, goal: str, results: List[Dict[str, Any]]) -> ReportOutput:
    """Build a report directly from step outputs, without the LLM.

    Args:
        title: Report title.
        goal: The research goal.
        results: Entries with ``step_type``, ``title`` and ``data`` keys, in step order.

    Returns:
        ReportOutput: The assembled report.
    """
    sections: List[ReportSection] = []
    summary = ""
    for result in results:
        data = result.get("data") or {}
        sections.extend(_sections_for(result.get("step_type", ""), result.get("title", ""), data))
        if result.get("step_type") in (StepType.SUMMARIZE.value, StepType.ANALYZE.value) and data.get("summary"):
            summary = data["summary"]

    if not summary:
        summary = f"Completed {len(results)} research steps for: {goal}"
    if not sections:
        sections.append(
            ReportSection(type=SectionType.TEXT, title="Overview", content="The workflow produced no reportable data.")
        )

    for i, section in enumerate(sections):
        section.id = f"section-{i + 1}"
    return ReportOutput(title=title, summary=summary, sections=sections)


class ReportSynthesizer:
    """Produces the report artifact for a completed workflow."""

    def __init__(self, llm: Optional[LLMService] = None):
        """Initialize with an LLM client (defaults to the shared service)."""
        self.llm_service = llm or llm_service

    async def synthesize(
        self,
        goal: str,
        title: str,
        output_format: str,
        results: List[Dict[str, Any]],
    ) -> ReportOutput:
        """Write a report from the outputs of a workflow's steps.

        Args:
            goal: The research goal.
            title: The workflow title, used as the report title hint.
            output_format: Report format (summary, analysis, comparison, ...).
            results: Entries with ``step_index``, ``step_type``, ``title`` and ``data``.

        Returns:
            ReportOutput: The synthesized (or assembled) report.
        """
        if self.llm_service.is_configured:
            try:
                return await self._llm_report(goal, title, output_format, results)
            except (ValueError, ValidationError) as e:
                logger.warning("report_synthesis_invalid", error=str(e))
            except Exception as e:
                logger.exception("report_synthesis_failed", error=str(e))

        return assemble_report(title, goal, results)

    async def _llm_report(
        self,
        goal: str,
        title: str,
        output_format: str,
        results: List[Dict[str, Any]],
    ) -> ReportOutput:
        system_prompt, user_prompt = build_synthesis_prompt(goal, results, output_format, custom_title=title)
        data = await self.llm_service.call_json(system_prompt, user_prompt)
        if not isinstance(data, dict) or not data.get("title") or not data.get("summary") or not data.get("sections"):
            raise ValueError("Model returned an invalid report structure")

        report = ReportOutput.model_validate(data)
        for i, section in enumerate(report.sections):
            if not section.id:
                section.id = f"section-{i + 1}"
        logger.info("report_synthesized", title=report.title, section_count=len(report.sections))
        return report
