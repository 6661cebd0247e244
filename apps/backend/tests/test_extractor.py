"""
Unit tests for schema-guided extraction.
"""

import pytest

from core.errors import InferenceFailure, MalformedOutput
from pipeline.extractor import (
    SchemaExtractor,
    build_prompt,
    parse_model_output,
    project_to_schema,
    strip_code_fences,
)

from conftest import FakeCompletionService

SCHEMA = {"title": "string", "price": "number"}


class TestStripCodeFences:
    """Code-fence and chatter removal."""

    def test_plain_json_unchanged(self):
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'

    def test_json_fence(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_surrounding_chatter(self):
        text = 'Sure! Here you go:\n```json\n{"a": {"b": 2}}\n```\nAnything else?'
        assert strip_code_fences(text) == '{"a": {"b": 2}}'

    def test_none(self):
        assert strip_code_fences(None) == ''


class TestParseModelOutput:

    def test_valid_object(self):
        assert parse_model_output('```json\n{"title": "X", "price": 3}\n```') == {"title": "X", "price": 3}

    @pytest.mark.parametrize("text", ["", "   ", "not json at all", "[1, 2, 3]", '"just a string"', "{broken"])
    def test_malformed(self, text):
        with pytest.raises(MalformedOutput):
            parse_model_output(text)

    def test_malformed_keeps_raw_excerpt(self):
        with pytest.raises(MalformedOutput) as exc_info:
            parse_model_output("x" * 2000)
        assert len(exc_info.value.raw) == 500


class TestProjectToSchema:

    def test_missing_keys_become_null_and_extra_keys_dropped(self):
        data = {"title": "Widget", "colour": "red"}
        assert project_to_schema(data, SCHEMA) == {"title": "Widget", "price": None}

    def test_key_order_follows_schema(self):
        data = {"price": 1, "title": "A"}
        assert list(project_to_schema(data, SCHEMA)) == ["title", "price"]


class TestBuildPrompt:

    def test_prompt_contains_schema_and_content(self):
        prompt = build_prompt("PAGE TEXT", SCHEMA)
        assert '"title": "string"' in prompt
        assert "PAGE TEXT" in prompt
        assert "null" in prompt

    def test_deterministic(self):
        assert build_prompt("abc", SCHEMA) == build_prompt("abc", SCHEMA)

    def test_strict_prompt_adds_reminder(self):
        assert "could not be parsed" in build_prompt("abc", SCHEMA, strict=True)
        assert "could not be parsed" not in build_prompt("abc", SCHEMA)


class TestSchemaExtractor:
    """Retry policy and outcome accounting."""

    @pytest.mark.asyncio
    async def test_single_attempt_success(self):
        service = FakeCompletionService(['{"title": "Widget", "price": 9.5, "extra": true}'])
        outcome = await SchemaExtractor(service).extract("content", SCHEMA)

        assert outcome.content == {"title": "Widget", "price": 9.5}
        assert outcome.attempts == 1
        assert outcome.engine == "fake"
        assert outcome.approx_tokens > 0
        assert len(service.prompts) == 1

    @pytest.mark.asyncio
    async def test_retries_once_on_malformed_output(self):
        service = FakeCompletionService(["I cannot do that", '{"title": "Widget", "price": 1}'])
        outcome = await SchemaExtractor(service).extract("content", SCHEMA)

        assert outcome.attempts == 2
        assert outcome.content["title"] == "Widget"
        assert "could not be parsed" in service.prompts[1]

    @pytest.mark.asyncio
    async def test_gives_up_after_second_malformed_output(self):
        service = FakeCompletionService(["nope", "still nope"])
        with pytest.raises(MalformedOutput):
            await SchemaExtractor(service).extract("content", SCHEMA)
        assert len(service.prompts) == 2

    @pytest.mark.asyncio
    async def test_inference_failure_not_retried(self):
        service = FakeCompletionService([InferenceFailure("HTTP 500 from completion service")])
        with pytest.raises(InferenceFailure):
            await SchemaExtractor(service).extract("content", SCHEMA)
        assert len(service.prompts) == 1

    @pytest.mark.asyncio
    async def test_all_null_outcome(self):
        service = FakeCompletionService(['{"title": null}'])
        outcome = await SchemaExtractor(service).extract("", SCHEMA)

        assert outcome.content == {"title": None, "price": None}
        assert outcome.all_null is True
