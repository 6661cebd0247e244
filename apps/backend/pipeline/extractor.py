"""
Schema-guided extraction.

Builds a single prompt from a target schema and sanitized page content, calls
the completion service, and turns the untrusted response text into a JSON
object whose keys are exactly the schema keys.

Retry policy: one retry with a stricter reminder when the model answers with
something that is not JSON. Completion service errors are not retried here.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

from app.ai_service import CompletionService
from core.errors import MalformedOutput

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

_FENCE_RE = re.compile(r'```(?:[a-zA-Z0-9_-]+)?')

STRICT_REMINDER = (
    "IMPORTANT: Your previous answer could not be parsed. "
    "Return ONLY the JSON object. No prose, no markdown, no code fences."
)


class ExtractionOutcome:
    """What the extractor produced, plus accounting for result metadata."""

    def __init__(self, content: Dict[str, Any], attempts: int, approx_tokens: int,
                 engine: str, model: Optional[str] = None):
        self.content = content
        self.attempts = attempts
        self.approx_tokens = approx_tokens
        self.engine = engine
        self.model = model

    @property
    def all_null(self) -> bool:
        return all(value is None for value in self.content.values())

    def metadata(self) -> Dict[str, Any]:
        return {
            "engine": self.engine,
            "model": self.model,
            "approx_tokens": self.approx_tokens,
            "attempts": self.attempts,
        }


def approx_tokens(text: str) -> int:
    """Rough token estimate (4 chars per token)."""
    return (len(text) + 3) // 4


def build_prompt(content: str, schema: Dict[str, str], strict: bool = False) -> str:
    """Build the extraction prompt. Deterministic for a given input."""
    schema_json = json.dumps(schema, indent=2)
    reminder = f"{STRICT_REMINDER}\n\n" if strict else ""
    return f"""{reminder}You are a structured-extraction agent. Map the SOURCE content onto the target schema.

Target schema (field name -> type hint):
{schema_json}

Rules:
1. Return raw JSON only: a single object, no markdown, no explanations.
2. Use exactly the schema's field names as keys, and include every one of them.
3. Respect each type hint (string, number, boolean, array, object).
4. Use null for any field whose value is unknown or not present in the source.

SOURCE:
{content}"""


def strip_code_fences(text: str) -> str:
    """
    Remove markdown code-fence markers and surrounding chatter.

    Handles answers like 'Sure! ```json {"a": 1} ``` '. If the text is still not
    JSON after removing the fences, the outermost {...} span is returned.
    """
    if text is None:
        return ''
    cleaned = _FENCE_RE.sub('', text).strip()
    if cleaned.startswith('{') and cleaned.endswith('}'):
        return cleaned

    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end > start:
        return cleaned[start:end + 1]
    return cleaned


def parse_model_output(text: str) -> Dict[str, Any]:
    """
    Parse untrusted model text into a JSON object.

    Raises:
        MalformedOutput: not parseable, or the top-level value is not an object
    """
    candidate = strip_code_fences(text)
    if not candidate:
        raise MalformedOutput("completion service returned an empty response", raw=text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise MalformedOutput(f"response is not valid JSON ({e.msg} at position {e.pos})", raw=text)
    if not isinstance(data, dict):
        raise MalformedOutput(f"expected a JSON object, got {type(data).__name__}", raw=text)
    return data


def project_to_schema(data: Dict[str, Any], schema: Dict[str, str]) -> Dict[str, Any]:
    """Keep exactly the schema keys, in schema order; missing keys become None."""
    extra = [key for key in data if key not in schema]
    if extra:
        logger.debug(f"[extractor] Dropping keys outside the schema: {extra}")
    return {field_name: data.get(field_name) for field_name in schema}


class SchemaExtractor:
    """Maps sanitized content onto a user-defined schema through a completion service."""

    def __init__(self, service: CompletionService, max_attempts: int = MAX_ATTEMPTS):
        self.service = service
        self.max_attempts = max(1, max_attempts)

    async def extract(self, content: str, schema: Dict[str, str]) -> ExtractionOutcome:
        """
        Extract a schema-shaped JSON object from content.

        Args:
            content: Sanitized page content
            schema: Validated schema (field name -> type hint)

        Returns:
            ExtractionOutcome whose content keys equal the schema keys

        Raises:
            InferenceFailure: the completion service errored (not retried)
            MalformedOutput: every attempt returned unparseable output
        """
        tokens = 0
        last_error: Optional[MalformedOutput] = None

        for attempt in range(1, self.max_attempts + 1):
            prompt = build_prompt(content, schema, strict=attempt > 1)
            tokens += approx_tokens(prompt)

            raw = await self.service.complete(prompt)
            tokens += approx_tokens(raw or '')

            try:
                data = parse_model_output(raw)
            except MalformedOutput as e:
                last_error = e
                logger.warning(f"[extractor] Malformed output on attempt {attempt}/{self.max_attempts}: {e.message}")
                continue

            return ExtractionOutcome(
                content=project_to_schema(data, schema),
                attempts=attempt,
                approx_tokens=tokens,
                engine=getattr(self.service, 'engine', 'unknown'),
                model=getattr(self.service, 'model', None),
            )

        raise last_error
