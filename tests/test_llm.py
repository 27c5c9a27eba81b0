import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.output_parsers import JsonOutputParser

from quiz_tutor.core.llm import LangChainLLMProvider, coerce_to_json, strip_code_fences, wrap_json_payload


def _provider(responses) -> LangChainLLMProvider:
    provider = LangChainLLMProvider.__new__(LangChainLLMProvider)
    provider.model = FakeListChatModel(responses=responses)
    provider.json_parser = JsonOutputParser()
    return provider


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_coerce_to_json_extracts_payload_from_prose():
    assert coerce_to_json('Here you go: {"graded": []} hope that helps') == {"graded": []}
    assert coerce_to_json('Sure! [1, 2]') == [1, 2]
    assert coerce_to_json("{'a': 1,}") == {"a": 1}


def test_wrap_json_payload():
    assert wrap_json_payload({"graded": []}, "graded") == {"graded": []}
    assert wrap_json_payload([1, 2], "questions") == {"questions": [1, 2]}
    with pytest.raises(ValueError):
        wrap_json_payload([1, 2], None)


async def test_generate_json_wraps_bare_array():
    provider = _provider(['```json\n[{"grade": "correct", "score": 1}]\n```'])
    result = await provider.generate_json("Grade this", schema={}, root_key="graded")
    assert result == {"graded": [{"grade": "correct", "score": 1}]}


async def test_generate_json_repairs_once():
    provider = _provider(["I cannot format this properly", '{"questions": []}'])
    result = await provider.generate_json("Generate", schema={}, root_key="questions")
    assert result == {"questions": []}


async def test_generate_returns_text():
    provider = _provider(["plain answer"])
    assert await provider.generate("Say something") == "plain answer"
