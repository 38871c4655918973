"""Client for the text-generation service that translates catalog chunks."""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import jsonschema
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    RateLimitError,
    APITimeoutError,
    OpenAIError
)
from openai import AsyncOpenAI
from openai.types.chat import (
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam
)

from locale_sync.catalog import CATALOG_SCHEMA

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert translator specializing in software localization. "
    "You translate only the values of JSON objects and always answer with a single valid JSON object."
)

# Keys that services sometimes wrap the real answer in, e.g. {"text": "{...}"}.
ENVELOPE_KEYS = ("text", "content", "data", "result", "translations")


@dataclass(frozen=True)
class TranslationSuccess:
    data: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TranslationError:
    kind: str
    message: str
    # Seconds the service asked us to wait before retrying, if it said so.
    retry_after: Optional[float] = None


TranslationResult = Union[TranslationSuccess, TranslationError]


class ResponseParseError(ValueError):
    """Raised when a service response cannot be turned into a key -> string map."""


def count_tokens(text: str, model_name: str = 'gpt-4o-mini') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may try to download model data, and it
    does not know every model name. If it fails the ``gpt2`` encoding that
    ships with ``tiktoken`` is used, and as a last resort a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())
    return len(encoding.encode(text))


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    fence_match = re.match(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", text, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()
    return text


def _as_object(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(_strip_code_fence(value))
        except json.JSONDecodeError:
            return None
        if isinstance(decoded, dict):
            return decoded
    return None


def _unwrap(value: Any) -> Any:
    """Decode JSON-encoded strings and single-key envelopes around the payload."""
    for _ in range(3):
        if isinstance(value, str):
            try:
                value = json.loads(_strip_code_fence(value))
            except json.JSONDecodeError as json_exc:
                raise ResponseParseError(f"Embedded JSON string could not be parsed: {json_exc}") from json_exc
            continue
        if isinstance(value, dict) and len(value) == 1:
            (only_key, inner), = value.items()
            # {"text": "Olá"} is a legitimate one-key catalog; only unwrap real objects.
            inner_object = _as_object(inner) if only_key in ENVELOPE_KEYS else None
            if inner_object is not None:
                value = inner_object
                continue
        break
    return value


def parse_translation_payload(response_text: str) -> Dict[str, str]:
    """
    Parse the service's answer into a key -> string map.

    The text is parsed directly first. If that fails, a second pass strips
    code fences and surrounding prose, keeping the outermost ``{...}``. A
    payload that is itself a JSON-encoded string, or wrapped in a one-key
    envelope such as ``{"text": "..."}``, is unwrapped.

    Raises:
        ResponseParseError: If no attempt yields a flat object of strings.
    """
    try:
        parsed = json.loads(response_text)
    except json.JSONDecodeError as first_exc:
        cleaned = _strip_code_fence(response_text)
        start, end = cleaned.find('{'), cleaned.rfind('}')
        if start == -1 or end <= start:
            raise ResponseParseError(f"Response is not JSON: {first_exc}") from first_exc
        try:
            parsed = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as second_exc:
            raise ResponseParseError(
                f"Response is not JSON after secondary parse: {second_exc}"
            ) from second_exc

    parsed = _unwrap(parsed)

    try:
        jsonschema.validate(instance=parsed, schema=CATALOG_SCHEMA)
    except jsonschema.ValidationError as schema_exc:
        raise ResponseParseError(
            f"Response did not match the required JSON schema: {schema_exc.message}"
        ) from schema_exc
    return parsed


def _retry_after_from(api_exc: Exception) -> Optional[float]:
    """Read a Retry-After header (seconds or ``<n>ms``) from an API error."""
    response = getattr(api_exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    retry_after_header = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after_header:
        return None
    try:
        if retry_after_header.endswith("ms"):
            return float(retry_after_header[:-2]) / 1000
        return float(retry_after_header)
    except ValueError:
        logger.warning("Ignoring unparseable Retry-After header: %r", retry_after_header)
        return None


class OpenAITranslatorClient:
    """Translates chunks through the OpenAI chat completions API."""

    def __init__(
            self,
            client: AsyncOpenAI,
            model_name: str,
            max_model_tokens: int = 4000,
            request_timeout: Optional[float] = 120.0
    ):
        self.client = client
        self.model_name = model_name
        self.max_model_tokens = max_model_tokens
        self.request_timeout = request_timeout

    async def invoke(self, prompt: str, target_locale: str) -> TranslationResult:
        """
        Send one prompt and return the parsed translation or a structured error.

        Never raises for service or parse failures; those come back as
        ``TranslationError`` so the caller can decide whether to retry.
        """
        prompt_tokens = count_tokens(SYSTEM_PROMPT + prompt, self.model_name)
        logger.debug("Prompt for '%s' is %d tokens.", target_locale, prompt_tokens)
        if prompt_tokens > self.max_model_tokens:
            logger.warning(
                "Prompt for '%s' is %d tokens, above max_model_tokens (%d). Consider a smaller chunk_size.",
                target_locale, prompt_tokens, self.max_model_tokens
            )

        try:
            response = await self.client.chat.completions.create(
                model=self.model_name,
                messages=[
                    ChatCompletionSystemMessageParam(role="system", content=SYSTEM_PROMPT),
                    ChatCompletionUserMessageParam(role="user", content=prompt)
                ],
                temperature=0,
                response_format={"type": "json_object"},
                timeout=self.request_timeout,
            )
        except (RateLimitError, APITimeoutError, APIConnectionError, APIStatusError, OpenAIError) as api_exc:
            logger.error(f"API error occurred: {api_exc.__class__.__name__} - {api_exc}")
            return TranslationError(
                kind=api_exc.__class__.__name__,
                message=str(api_exc),
                retry_after=_retry_after_from(api_exc)
            )

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            return TranslationError(kind="empty_response", message="The service returned no content.")

        try:
            return TranslationSuccess(data=parse_translation_payload(content))
        except ResponseParseError as parse_exc:
            logger.error(f"Translation for '{target_locale}' failed: {parse_exc}")
            logger.debug(f"Invalid AI response:\n---\n{content}\n---")
            return TranslationError(kind="invalid_response", message=str(parse_exc))
