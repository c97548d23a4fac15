"""LLM access for planning, step execution, and report synthesis.

Wraps a LangChain ``ChatOpenAI`` model behind a small async interface that
takes role/content message dicts, with optional Langfuse tracing.
"""

import json
import re
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)
from langchain_openai import ChatOpenAI
from langfuse.langchain import CallbackHandler

from app.core.config import settings
from app.core.logging import logger

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class LLMUnavailableError(RuntimeError):
    """No LLM is configured for this deployment."""


def parse_json_response(content: str) -> Any:
    """Parse JSON from an LLM reply, tolerating markdown code fences.

    Raises:
        ValueError: If no valid JSON can be read from the reply.
    """
    cleaned = _FENCE_RE.sub("", content).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                pass
        logger.warning("llm_json_parse_failed", content=content[:300])
        raise ValueError("LLM response is not valid JSON")


def _to_langchain(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


class LLMService:
    """Async chat model client."""

    def __init__(
        self,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        """Initialize the service; the underlying model is created on first use."""
        self.model = model or settings.DEFAULT_LLM_MODEL
        self.temperature = settings.DEFAULT_LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.MAX_TOKENS
        self._llm: Optional[ChatOpenAI] = None

    @property
    def is_configured(self) -> bool:
        """Whether calls can be made."""
        return settings.llm_configured

    def _get_llm(self) -> ChatOpenAI:
        if not self.is_configured:
            raise LLMUnavailableError("OPENAI_API_KEY is not configured")
        if self._llm is None:
            self._llm = ChatOpenAI(
                model=self.model,
                api_key=settings.OPENAI_API_KEY,
                base_url=settings.OPENAI_API_BASE,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            logger.info("llm_initialized", model=self.model)
        return self._llm

    async def call(self, messages: List[Dict[str, str]]) -> BaseMessage:
        """Send role/content messages to the model and return its reply.

        Args:
            messages: Dicts with ``role`` (system, user, assistant) and ``content``.

        Returns:
            BaseMessage: The model response.
        """
        llm = self._get_llm()
        config: Dict[str, Any] = {}
        if settings.langfuse_configured:
            config["callbacks"] = [CallbackHandler()]
        return await llm.ainvoke(_to_langchain(messages), config=config)

    async def call_json(self, system_prompt: str, user_prompt: str) -> Any:
        """Call the model with a system and user prompt and parse a JSON reply."""
        response = await self.call(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]
        )
        content = response.content if isinstance(response.content, str) else str(response.content)
        return parse_json_response(content)


llm_service = LLMService()
