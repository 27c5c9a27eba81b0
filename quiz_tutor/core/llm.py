"""
LLM access through LangChain with support for multiple providers
"""
from typing import Dict, Any, Optional, List
from abc import ABC, abstractmethod
import json
import re
import time
from langchain_core.messages import BaseMessage, SystemMessage, HumanMessage
from langchain_core.output_parsers import JsonOutputParser

from quiz_tutor.config import settings
from quiz_tutor.core.exceptions import ConfigurationError
from quiz_tutor.core.logging import get_logger, metrics_logger
from quiz_tutor.core.retry import llm_retry

logger = get_logger(__name__)


class LLMProvider(ABC):
    """Abstract base class for LLM providers"""

    @abstractmethod
    async def generate(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> str:
        """Generate text response"""
        pass

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        schema: Dict[str, Any],
        system_prompt: Optional[str] = None,
        root_key: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Generate structured JSON response"""
        pass


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences and extract JSON body if present."""
    if not text:
        return text
    fence_match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text, re.IGNORECASE)
    if fence_match:
        return fence_match.group(1).strip()
    return text.strip()


def coerce_to_json(raw: str) -> Any:
    """Best-effort conversion of model output to a JSON object or array."""
    candidate = strip_code_fences((raw or "").strip())
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    # Models often wrap the payload in prose; take the outermost object or array
    for opener, closer in (("{", "}"), ("[", "]")):
        start = candidate.find(opener)
        end = candidate.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(candidate[start:end + 1])
            except ValueError:
                continue
    # As a last resort, replace single quotes and trailing commas (very naive)
    naive = candidate.replace("'", '"')
    naive = re.sub(r",\s*([}\]])", r"\1", naive)
    return json.loads(naive)


def wrap_json_payload(payload: Any, root_key: Optional[str]) -> Dict[str, Any]:
    """Normalize a parsed payload to a dict; bare arrays go under root_key."""
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, list) and root_key:
        return {root_key: payload}
    raise ValueError(f"Expected a JSON object, got {type(payload).__name__}")


class LangChainLLMProvider(LLMProvider):
    """LangChain-based LLM provider with multi-model support"""

    def __init__(self):
        self.model = self._initialize_model()
        self.json_parser = JsonOutputParser()

    def _initialize_model(self):
        """Initialize the appropriate LLM based on configuration"""
        name = settings.llm_model.lower()
        if "gpt" in name and settings.openai_api_key:
            from langchain_openai import ChatOpenAI
            return ChatOpenAI(
                model=settings.llm_model,
                api_key=settings.openai_api_key,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=settings.llm_timeout,
                max_retries=3
            )
        if "claude" in name and settings.anthropic_api_key:
            from langchain_anthropic import ChatAnthropic
            return ChatAnthropic(
                model=settings.llm_model,
                api_key=settings.anthropic_api_key,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=settings.llm_timeout,
                max_retries=3
            )
        if ("llama" in name or "mixtral" in name) and settings.groq_api_key:
            # Groq serves an OpenAI-compatible chat completions endpoint
            from langchain_openai import ChatOpenAI
            return ChatOpenAI(
                model=settings.llm_model,
                api_key=settings.groq_api_key,
                base_url=settings.groq_base_url,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=settings.llm_timeout,
                max_retries=3
            )
        if not settings.gemini_api_key:
            raise ConfigurationError(
                "No API key configured for the selected LLM model",
                {"llm_model": settings.llm_model}
            )
        from langchain_google_genai import ChatGoogleGenerativeAI
        model = settings.llm_model if "gemini" in name else "gemini-2.5-flash"
        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=settings.gemini_api_key,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_tokens,
            max_retries=3
        )

    @staticmethod
    def _messages(prompt: str, system_prompt: Optional[str]) -> List[BaseMessage]:
        messages: List[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))
        return messages

    @llm_retry
    async def _invoke(self, messages: List[BaseMessage]) -> str:
        response = await self.model.ainvoke(messages)
        return response.content

    async def _call(self, messages: List[BaseMessage], operation: str) -> str:
        start = time.time()
        try:
            content = await self._invoke(messages)
        except Exception as e:
            metrics_logger.log_llm_complete(settings.llm_model, operation, time.time() - start, success=False)
            logger.error("LLM call failed", error=str(e), operation=operation)
            raise
        metrics_logger.log_llm_complete(settings.llm_model, operation, time.time() - start)
        return content

    async def generate(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> str:
        """Generate text response using LangChain"""
        return await self._call(self._messages(prompt, system_prompt), "generate")

    async def generate_json(
        self,
        prompt: str,
        schema: Dict[str, Any],
        system_prompt: Optional[str] = None,
        root_key: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Generate structured JSON response"""
        enhanced_prompt = (
            f"{prompt}\n\n"
            f"Respond with valid JSON matching this schema (no comments, no prose, no code fences):\n"
            f"{json.dumps(schema, indent=2)}\n"
            f"Output ONLY the JSON object."
        )

        raw = await self._call(self._messages(enhanced_prompt, system_prompt), "generate_json")
        try:
            try:
                # First try the built-in parser for strictness
                payload = self.json_parser.parse(raw)
            except Exception:
                payload = coerce_to_json(raw)
            return wrap_json_payload(payload, root_key)
        except ValueError as e:
            logger.warning("JSON parse failed, attempting repair", error=str(e), model=settings.llm_model)

        # Single repair round-trip with a strict instruction
        repair_prompt = (
            "Return ONLY a valid JSON that matches the schema above. "
            "Do not include any markdown or commentary. "
            "Fix and output the JSON for this content:\n\n" + enhanced_prompt
        )
        repaired = await self._call(self._messages(repair_prompt, system_prompt), "repair_json")
        try:
            return wrap_json_payload(coerce_to_json(repaired), root_key)
        except ValueError as e:
            logger.error("JSON repair failed", error=str(e), model=settings.llm_model)
            raise


# Singleton instance
_llm_provider = None


def get_llm_provider() -> LLMProvider:
    """Get singleton LLM provider instance"""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = LangChainLLMProvider()
    return _llm_provider
