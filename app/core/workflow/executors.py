"""Step executors for research workflows.

Each executor handles one step type: it validates the step's params, does
the work (search, LLM extraction/analysis, page summaries, image
generation), and returns a typed output dumped to a JSON-ready dict.
Failures are raised as ``ExecutionError`` with a retryable flag.
"""

import asyncio
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Type,
)

import openai
from pydantic import (
    BaseModel,
    ValidationError,
)

from app.core.logging import logger
from app.core.workflow.errors import ExecutionError
from app.core.workflow.prompts import (
    build_aggregate_prompt,
    build_analyze_prompt,
    build_extract_prompt,
    build_summarize_prompt,
)
from app.core.workflow.schema import (
    AggregateOutput,
    AggregateParams,
    AnalyzeOutput,
    AnalyzeParams,
    ExtractOutput,
    ExtractParams,
    GenerateImageParams,
    GenerateReportParams,
    ImageGenerationOutput,
    ReportReadyOutput,
    SearchParams,
    StepContext,
    StepDefinition,
    StepType,
    SummarizeOutput,
    SummarizeParams,
)
from app.core.workflow.sources import ResearchClient
from app.services.llm import (
    LLMService,
    LLMUnavailableError,
    llm_service,
)


research_client = ResearchClient()


def llm_error(error: Exception) -> ExecutionError:
    """Classify an LLM client error as retryable or not."""
    if isinstance(error, LLMUnavailableError):
        return ExecutionError(str(error), retryable=False)
    if isinstance(error, ValueError):
        return ExecutionError(f"Unreadable model response: {error}", retryable=True)
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        return ExecutionError(f"Model request failed with HTTP {status}", retryable=status == 429 or status >= 500)
    if isinstance(error, openai.APIConnectionError):
        return ExecutionError(f"Model request failed: {error}", retryable=True)
    return ExecutionError(f"Model request failed: {error}", retryable=True)


class BaseStepExecutor(ABC):
    """Base class for all step executors.

    Attributes:
        step_type: The step type this executor handles.
    """

    step_type: StepType

    async def execute(self, step: StepDefinition, context: StepContext) -> Dict[str, Any]:
        """Execute a step and return its output.

        Args:
            step: The step to run.
            context: Goal, run config, and outputs of earlier completed steps.

        Returns:
            Dict[str, Any]: The step output, ready for storage.

        Raises:
            ExecutionError: If the step cannot be completed.
        """
        try:
            params = step.typed_params()
        except ValidationError as e:
            raise ExecutionError(f"Invalid params for {step.type.value} step: {e.error_count()} error(s)") from e

        output = await self.run(params, step, context)
        return output.model_dump(mode="json")

    @abstractmethod
    async def run(self, params: Any, step: StepDefinition, context: StepContext) -> BaseModel:
        """Do the step's work with validated params."""


class LLMStepExecutor(BaseStepExecutor):
    """Base for executors that ask the LLM for a JSON answer."""

    def __init__(self, llm: Optional[LLMService] = None):
        """Initialize with an LLM client (defaults to the shared service)."""
        self.llm_service = llm or llm_service

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        output_model: Type[BaseModel],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> BaseModel:
        """Call the LLM and validate its JSON reply against ``output_model``."""
        try:
            data = await self.llm_service.call_json(system_prompt, user_prompt)
        except Exception as e:
            raise llm_error(e) from e

        if not isinstance(data, dict):
            raise ExecutionError("Model response is not a JSON object", retryable=True)
        try:
            return output_model.model_validate({**(defaults or {}), **data})
        except ValidationError as e:
            raise ExecutionError(
                f"Model response does not match the expected shape: {e.error_count()} error(s)",
                retryable=True,
            ) from e


class SearchStepExecutor(BaseStepExecutor):
    """Queries a web, GitHub, or image search provider."""

    step_type = StepType.SEARCH

    def __init__(self, client: ResearchClient):
        """Initialize with the HTTP client used for searches."""
        self.client = client

    async def run(self, params: SearchParams, step: StepDefinition, context: StepContext) -> BaseModel:
        return await self.client.search(params)


class ExtractStepExecutor(LLMStepExecutor):
    """Pulls structured records out of an earlier step's output."""

    step_type = StepType.EXTRACT

    async def run(self, params: ExtractParams, step: StepDefinition, context: StepContext) -> BaseModel:
        source_data = context.results.get(params.from_step)
        if not source_data:
            raise ExecutionError(f"No data from step {params.from_step} to extract from")

        system_prompt, user_prompt = build_extract_prompt(params.extraction_goal, params.fields, source_data)
        output = await self.ask(system_prompt, user_prompt, ExtractOutput)
        if not output.total_extracted:
            output.total_extracted = len(output.extracted)
        return output


class AnalyzeStepExecutor(LLMStepExecutor):
    """Answers an analysis question over earlier outputs."""

    step_type = StepType.ANALYZE

    async def run(self, params: AnalyzeParams, step: StepDefinition, context: StepContext) -> BaseModel:
        data = context.outputs_for(params.from_steps)
        if not data:
            raise ExecutionError("No data available for analysis")

        system_prompt, user_prompt = build_analyze_prompt(params.analysis_type, params.question, data)
        return await self.ask(
            system_prompt,
            user_prompt,
            AnalyzeOutput,
            defaults={"analysis_type": params.analysis_type},
        )


class AggregateStepExecutor(LLMStepExecutor):
    """Merges earlier outputs; ``combine`` is done in code, other strategies by the LLM."""

    step_type = StepType.AGGREGATE

    async def run(self, params: AggregateParams, step: StepDefinition, context: StepContext) -> BaseModel:
        indices = params.from_steps or sorted(context.results)
        to_merge = [
            {"step_index": i, "data": context.results[i]} for i in indices if context.results.get(i)
        ]
        if not to_merge:
            raise ExecutionError("No data available for aggregation")

        if params.merge_strategy == "combine":
            items: List[Any] = []
            for entry in to_merge:
                data = entry["data"]
                for key in ("results", "extracted", "findings", "aggregated_data"):
                    if isinstance(data.get(key), list):
                        items.extend(data[key])
                        break
                else:
                    items.append(data)
            return AggregateOutput(
                merge_strategy=params.merge_strategy,
                total_items=len(items),
                sources_used=len(to_merge),
                aggregated_data=items,
            )

        system_prompt, user_prompt = build_aggregate_prompt(params.merge_strategy, to_merge)
        output = await self.ask(
            system_prompt,
            user_prompt,
            AggregateOutput,
            defaults={"merge_strategy": params.merge_strategy},
        )
        output.sources_used = len(to_merge)
        return output


class SummarizeStepExecutor(LLMStepExecutor):
    """Fetches pages (given or found by earlier searches) and summarizes them."""

    step_type = StepType.SUMMARIZE

    def __init__(self, client: ResearchClient, llm: Optional[LLMService] = None):
        """Initialize with the HTTP client for page fetches and an LLM client."""
        super().__init__(llm)
        self.client = client

    async def run(self, params: SummarizeParams, step: StepDefinition, context: StepContext) -> BaseModel:
        hits = [
            result
            for output in context.outputs_for(params.from_steps)
            for result in output.get("results", [])
            if isinstance(result, dict)
        ]
        urls = params.urls or [hit["url"] for hit in hits if hit.get("url")]
        urls = list(dict.fromkeys(urls))[: params.max_pages]

        documents: List[Dict[str, str]] = []
        if urls:
            fetched = await asyncio.gather(*(self.client.fetch_page(url) for url in urls), return_exceptions=True)
            for url, page in zip(urls, fetched):
                if isinstance(page, BaseException):
                    logger.warning("summarize_page_fetch_failed", url=url, error=str(page))
                elif page.get("text"):
                    documents.append(page)

        if not documents:
            documents = [
                {
                    "url": hit.get("url", ""),
                    "title": hit.get("title", ""),
                    "text": hit.get("snippet") or hit.get("description", ""),
                }
                for hit in hits
                if hit.get("snippet") or hit.get("description")
            ]
        if not documents:
            failures = [page for page in fetched if isinstance(page, ExecutionError)] if urls else []
            if failures:
                raise failures[0]
            raise ExecutionError("No content available to summarize")

        system_prompt, user_prompt = build_summarize_prompt(context.goal, params.focus, documents)
        return await self.ask(
            system_prompt,
            user_prompt,
            SummarizeOutput,
            defaults={"sources": [doc["url"] for doc in documents if doc.get("url")]},
        )


class ImageGenerationStepExecutor(BaseStepExecutor):
    """Generates images from a prompt."""

    step_type = StepType.GENERATE_IMAGE

    def __init__(self, client: ResearchClient):
        """Initialize with the HTTP client used for the image API."""
        self.client = client

    async def run(self, params: GenerateImageParams, step: StepDefinition, context: StepContext) -> BaseModel:
        images = await self.client.generate_images(params.prompt, params.size, params.n)
        return ImageGenerationOutput(prompt=params.prompt, images=images)


class GenerateReportStepExecutor(BaseStepExecutor):
    """Marks the collected data as ready for report synthesis."""

    step_type = StepType.GENERATE_REPORT

    async def run(self, params: GenerateReportParams, step: StepDefinition, context: StepContext) -> BaseModel:
        collected = len([output for output in context.results.values() if output])
        report_format = params.report_format or context.output_format
        return ReportReadyOutput(
            report_format=report_format.value,
            data_collected=collected,
            summary=f"All {collected} steps completed. Report generation ready.",
        )


def build_step_executors(
    client: Optional[ResearchClient] = None,
    llm: Optional[LLMService] = None,
) -> Dict[StepType, BaseStepExecutor]:
    """Create the executor registry keyed by step type."""
    client = client or research_client
    executors: List[BaseStepExecutor] = [
        SearchStepExecutor(client),
        ExtractStepExecutor(llm),
        AnalyzeStepExecutor(llm),
        AggregateStepExecutor(llm),
        SummarizeStepExecutor(client, llm),
        ImageGenerationStepExecutor(client),
        GenerateReportStepExecutor(),
    ]
    return {executor.step_type: executor for executor in executors}


async def execute_step(
    step: StepDefinition,
    context: StepContext,
    executors: Dict[StepType, BaseStepExecutor],
) -> Dict[str, Any]:
    """Dispatch a step to the executor registered for its type.

    Raises:
        ExecutionError: If no executor handles the step type, or the step fails.
    """
    executor = executors.get(step.type)
    if executor is None:
        raise ExecutionError(f"Unknown step type: {step.type.value}")
    return await executor.execute(step, context)

