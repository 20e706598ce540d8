from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar, Union

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODELS = {
    "groq": "llama3-70b-8192",
    "openai": "gpt-4o",
}
DEFAULT_SYSTEM_CONTEXT = "You are a helpful AI assistant."
JSON_SYSTEM_CONTEXT = "You are a JSON generator."
JSON_INSTRUCTION = "\n\nIMPORTANT: Output ONLY valid JSON. No markdown, no explanations."
TEMPERATURE = 0.5

FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL | re.IGNORECASE)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class MissingAPIKeyError(EnvironmentError):
    """Raised when the selected provider has no API key."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ParseError:
    """Provider output that could not be turned into the expected shape."""
    raw: str
    cause: str

    @property
    def ok(self) -> bool:
        return False


JSONResult = Union[Ok[Any], ParseError]


def strip_fences(text: str) -> str:
    match = FENCE_RE.match(text or "")
    return (match.group(1) if match else (text or "")).strip()


def parse_json(raw: str) -> JSONResult:
    try:
        return Ok(json.loads(strip_fences(raw)))
    except (json.JSONDecodeError, TypeError) as e:
        return ParseError(raw=raw, cause=f"Invalid JSON: {e}")


def parse_model(raw: str, schema: Type[M]) -> Union[Ok[M], ParseError]:
    parsed = parse_json(raw)
    if isinstance(parsed, ParseError):
        return parsed
    try:
        return Ok(schema.model_validate(parsed.value))
    except ValidationError as e:
        return ParseError(raw=raw, cause=f"Schema validation failed: {e.error_count()} error(s): {e.errors()[0]['msg']}")


class AIClient:
    """Chat-completion client for Groq (OpenAI-compatible) or OpenAI."""

    def __init__(self, provider: str = "groq", api_key: Optional[str] = None,
                 base_url: Optional[str] = None, max_retries: int = 3,
                 default_model: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        if provider not in DEFAULT_MODELS:
            raise ValueError(f"Unsupported AI provider: {provider}")
        self.provider = provider
        self.default_model = default_model or DEFAULT_MODELS[provider]

        if client is not None:
            self.client = client
            return
        if not api_key:
            raise MissingAPIKeyError(f"Missing API key for {provider}")
        if provider == "groq" and not base_url:
            base_url = GROQ_BASE_URL
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=max_retries)

    @classmethod
    def from_settings(cls, settings) -> Optional["AIClient"]:
        """Build a client, or None when no key is configured for the provider."""
        if not settings.ai_configured:
            return None
        return cls(
            provider=settings.ai_provider,
            api_key=settings.ai_api_key,
            base_url=settings.ai_base_url,
            max_retries=settings.ai_max_retries,
            default_model=settings.ai_model,
        )

    async def generate(self, prompt: str, model: Optional[str] = None,
                       system_context: Optional[str] = None) -> str:
        try:
            response = await self.client.chat.completions.create(
                messages=[
                    {"role": "system", "content": system_context or DEFAULT_SYSTEM_CONTEXT},
                    {"role": "user", "content": prompt},
                ],
                model=model or self.default_model,
                temperature=TEMPERATURE,
            )
        except Exception as e:
            logger.error(f"AI generation error ({self.provider}): {e}")
            raise

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def generate_json(self, prompt: str, model: Optional[str] = None,
                            system_context: Optional[str] = None) -> JSONResult:
        """Ask for JSON; provider errors raise, malformed output is a ParseError."""
        raw = await self.generate(prompt + JSON_INSTRUCTION, model, system_context or JSON_SYSTEM_CONTEXT)
        result = parse_json(raw)
        if isinstance(result, ParseError):
            logger.warning(f"AI returned invalid JSON ({self.provider}): {result.cause}")
        return result

    async def generate_model(self, prompt: str, schema: Type[M], model: Optional[str] = None,
                             system_context: Optional[str] = None) -> Union[Ok[M], ParseError]:
        raw = await self.generate(prompt + JSON_INSTRUCTION, model, system_context or JSON_SYSTEM_CONTEXT)
        result = parse_model(raw, schema)
        if isinstance(result, ParseError):
            logger.warning(f"AI output rejected for {schema.__name__}: {result.cause}")
        return result
