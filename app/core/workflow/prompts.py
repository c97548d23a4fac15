"""Prompt builders for workflow planning, step execution, and report synthesis."""

import json
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
)

from app.core.config import settings

TRUNCATION_MARKER = "\n... [truncated]"

FORMAT_INSTRUCTIONS: Dict[str, str] = {
    "comparison": (
        "Create a COMPARISON report with these sections:\n"
        "1. text: Executive overview comparing the items\n"
        "2. table: Detailed comparison matrix with features/metrics as columns\n"
        "3. chart: Bar chart showing key quantitative differences (stars, downloads, etc.)\n"
        "4. list: Key differences and when to use each option\n"
        "5. text: Final recommendation with reasoning"
    ),
    "analysis": (
        "Create an ANALYSIS report with these sections:\n"
        "1. text: Executive overview of the analysis findings\n"
        "2. text: Detailed analysis of the main trends/patterns found\n"
        "3. table: Supporting data table with key metrics\n"
        "4. list: Key insights and takeaways (5-8 items)\n"
        "5. text: Conclusions, recommendations, and next steps"
    ),
    "timeline": (
        "Create a TIMELINE report with these sections:\n"
        "1. text: Executive overview of the subject's evolution\n"
        "2. table: Chronological events table with Date, Event, and Significance columns\n"
        "3. list: Major milestones and turning points\n"
        "4. text: Current state and recent developments\n"
        "5. text: Future predictions and emerging trends"
    ),
    "summary": (
        "Create a SUMMARY report with these sections:\n"
        "1. text: Executive summary (2-3 sentences capturing the most important finding)\n"
        "2. text: Detailed overview of main findings\n"
        "3. table: Key data points organized in a table (if applicable)\n"
        "4. list: Top highlights and takeaways (5-7 items)\n"
        "5. text: Conclusion with optional next steps"
    ),
}
FORMAT_INSTRUCTIONS["report"] = FORMAT_INSTRUCTIONS["analysis"]


def dump_data(data: Any, limit: int) -> str:
    """Serialize data as indented JSON, cut to ``limit`` characters."""
    text = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def build_planning_prompt(
    goal: str,
    sources: List[str],
    depth: str,
    output_format: str,
    max_results: int,
    max_steps: int,
) -> Tuple[str, str]:
    """Build the system and user prompts for LLM workflow planning."""
    system = f"""You are an expert research workflow planner for FlowSearch.
Break down research goals into precise, executable step chains.

# STEP TYPES

1. "search": query a search source
   params: {{"source": "google"|"github"|"pexels", "query": string, "num": number, "sort"?: string}}
   - Craft SPECIFIC search queries, not the raw user goal
   - Use a different query per search step
   - "google" for articles, docs and reviews; "github" for repositories; "pexels" for images
   - Set num to {max_results}

2. "extract": parse specific data from a previous step's results
   params: {{"extraction_goal": string, "fields": string[], "from_step": number}}

3. "analyze": analysis of collected data
   params: {{"analysis_type": string, "question": string, "from_steps": number[]}}
   analysis_type is one of "comparison", "sentiment", "trend", "general", "strengths_weaknesses"

4. "aggregate": combine data from multiple steps
   params: {{"from_steps": number[], "merge_strategy": "combine"|"deduplicate"|"rank"}}

5. "summarize": read web pages found by earlier searches and summarize them
   params: {{"from_steps": number[], "max_pages": number, "focus"?: string}}

6. "generate_image": create an illustration
   params: {{"prompt": string, "size": "1024x1024"}}

7. "generate_report": ALWAYS the final step
   params: {{"report_format": "{output_format}"}}

# CONSTRAINTS
- Available sources: {json.dumps(sources)}
- Maximum steps: {max_steps}
- Maximum results per search: {max_results}
- ALWAYS end with "generate_report"
- depends_on may only reference earlier steps

# OUTPUT FORMAT
Respond with ONLY valid JSON, no markdown and no explanation:
{{
  "title": "short title",
  "description": "one sentence",
  "steps": [
    {{"index": 0, "type": "search", "title": "...", "description": "...", "params": {{...}}, "depends_on": []}}
  ]
}}

# EXAMPLE
Goal: "Compare React, Vue, and Angular"
{{
  "title": "React vs Vue vs Angular",
  "description": "Comparison of top frontend frameworks by features, performance, and ecosystem",
  "steps": [
    {{"index": 0, "type": "search", "title": "Search web for framework comparison", "description": "Find recent articles comparing React, Vue, Angular", "params": {{"source": "google", "query": "React vs Vue vs Angular comparison features performance", "num": 10}}, "depends_on": []}},
    {{"index": 1, "type": "search", "title": "Check GitHub stars and activity", "description": "Find GitHub repos for each framework", "params": {{"source": "github", "query": "react vue angular framework", "sort": "stars", "num": 10}}, "depends_on": []}},
    {{"index": 2, "type": "extract", "title": "Extract framework metrics", "description": "Pull key comparison points from results", "params": {{"extraction_goal": "Extract framework name, stars, features, learning curve, performance, ecosystem size", "fields": ["name", "stars", "features", "learning_curve", "performance", "ecosystem"], "from_step": 0}}, "depends_on": [0, 1]}},
    {{"index": 3, "type": "analyze", "title": "Compare frameworks head-to-head", "description": "Rank frameworks across multiple dimensions", "params": {{"analysis_type": "comparison", "question": "Which framework is best for each use case?", "from_steps": [1, 2]}}, "depends_on": [2]}},
    {{"index": 4, "type": "generate_report", "title": "Generate comparison report", "description": "Create detailed comparison report", "params": {{"report_format": "comparison"}}, "depends_on": [0, 1, 2, 3]}}
  ]
}}"""

    user = (
        f'Research goal: "{goal}"\n\n'
        f"Generate a workflow with up to {max_steps} steps using sources: {json.dumps(sources)}.\n"
        f"Output format: {output_format}. Depth: {depth} ({max_results} results per search).\n\n"
        "Return ONLY the JSON object with title, description, and steps array."
    )
    return system, user


def build_extract_prompt(extraction_goal: str, fields: List[str], source_data: Any) -> Tuple[str, str]:
    """Prompts for an extract step."""
    system = (
        "You are a data extraction assistant. Extract specific information from search results.\n"
        "Respond with ONLY valid JSON, no markdown fences."
    )
    record = ", ".join(f'"{field}": "value"' for field in fields)
    user = (
        "Extract the following from these search results:\n\n"
        f"EXTRACTION GOAL: {extraction_goal}\n"
        f"FIELDS TO EXTRACT: {json.dumps(fields)}\n\n"
        f"SOURCE DATA:\n{dump_data(source_data, 8000)}\n\n"
        "Return JSON in this format:\n"
        f'{{"extracted": [{{{record}}}], "total_extracted": <number>, '
        '"summary": "Brief summary of what was extracted"}'
    )
    return system, user


def build_analyze_prompt(analysis_type: str, question: Optional[str], data: Any) -> Tuple[str, str]:
    """Prompts for an analyze step."""
    system = (
        "You are a research analyst. Analyze the provided data and give insights.\n"
        f"Analysis type: {analysis_type}\n"
        "Respond with ONLY valid JSON, no markdown fences."
    )
    user = (
        "Analyze this data:\n\n"
        f"QUESTION: {question or 'Provide a comprehensive analysis'}\n"
        f"ANALYSIS TYPE: {analysis_type}\n\n"
        f"DATA:\n{dump_data(data, 10000)}\n\n"
        "Return JSON in this format:\n"
        f'{{"analysis_type": "{analysis_type}", '
        '"findings": [{"insight": "Key finding", "evidence": "Supporting data", "confidence": "high|medium|low"}], '
        '"summary": "Overall analysis summary", "recommendations": ["Recommendation 1"]}'
    )
    return system, user


def build_aggregate_prompt(merge_strategy: str, data: Any) -> Tuple[str, str]:
    """Prompts for an LLM-driven aggregate step."""
    system = (
        "You are a data aggregation assistant. Merge and organize data from multiple sources.\n"
        "Respond with ONLY valid JSON, no markdown fences."
    )
    user = (
        f"Merge this data using strategy: {merge_strategy}\n\n"
        f"DATA SOURCES:\n{dump_data(data, 10000)}\n\n"
        "Return JSON in this format:\n"
        f'{{"merge_strategy": "{merge_strategy}", "total_items": <number>, '
        '"aggregated_data": [ ... merged items ... ], "summary": "Brief description of merged data"}'
    )
    return system, user


def build_summarize_prompt(goal: str, focus: Optional[str], documents: List[Dict[str, str]]) -> Tuple[str, str]:
    """Prompts for a summarize step over fetched pages or snippets."""
    system = (
        "You are a research assistant. Summarize the provided documents for the research goal.\n"
        "Use only facts present in the documents.\n"
        "Respond with ONLY valid JSON, no markdown fences."
    )
    user = (
        f"RESEARCH GOAL: {goal}\n"
        f"FOCUS: {focus or 'the most relevant findings for the goal'}\n\n"
        f"DOCUMENTS:\n{dump_data(documents, 12000)}\n\n"
        "Return JSON in this format:\n"
        '{"summary": "2-4 paragraph summary", "key_points": ["point 1", "point 2"], '
        '"sources": ["url 1", "url 2"]}'
    )
    return system, user


def build_synthesis_prompt(
    goal: str,
    results: List[Dict[str, Any]],
    output_format: str,
    custom_title: Optional[str] = None,
) -> Tuple[str, str]:
    """Build the system and user prompts for report synthesis."""
    data = dump_data(results, settings.REPORT_MAX_DATA_CHARS)
    format_guide = FORMAT_INSTRUCTIONS.get(output_format, FORMAT_INSTRUCTIONS["summary"])

    system = f"""You are a professional research report generator for FlowSearch.
Create well-structured, data-driven research reports from collected workflow data.

# SECTION TYPES (use these exact values for "type")
- "text": content is a string. Overviews, analysis paragraphs, conclusions.
- "table": content is {{"headers": string[], "rows": string[][]}}. Every row has as many cells as headers.
- "chart": content is {{"chart_type": "bar"|"line"|"pie", "labels": string[], "datasets": [{{"label": string, "data": number[]}}]}}. Data arrays match the labels.
- "list": content is {{"items": string[]}}. Takeaways, recommendations, pros and cons.

# RULES
1. Every section needs: id ("section-1", "section-2", ...), type, title, content
2. Use REAL data from the collected results; do not invent numbers or names
3. If data is sparse, say so in a text section
4. Include 3-6 sections
5. Keep the summary to 2-3 sentences
6. Respond with ONLY valid JSON, no markdown fences

# REPORT FORMAT: {output_format}
{format_guide}

# OUTPUT STRUCTURE
{{"title": "Report Title", "summary": "Executive summary.", "sections": [{{"id": "section-1", "type": "text", "title": "Overview", "content": "..."}}]}}"""

    title_line = f"TITLE: {custom_title}" if custom_title else "Generate an appropriate title from the goal."
    user = (
        f"Generate a {output_format} report for this research:\n\n"
        f"RESEARCH GOAL: {goal}\n"
        f"{title_line}\n\n"
        f"COLLECTED DATA:\n{data}\n\n"
        "Return ONLY the JSON object with title, summary, and sections array."
    )
    return system, user
