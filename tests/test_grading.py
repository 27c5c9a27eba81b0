import json

import httpx
import pytest

from conftest import FakeGrader, FakeLLM, graded
from quiz_tutor.core.exceptions import InvalidInput, OracleUnavailable
from quiz_tutor.core.grading import (
    HttpOpenEndedGrader,
    LLMOpenEndedGrader,
    classify_outcome,
    extract_improvements,
    grade_answer,
)
from quiz_tutor.core.questions import (
    GradedQuestion,
    GradingRequestItem,
    OpenEndedQuestion,
    Quiz,
    SingleChoiceQuestion,
    TrueFalseQuestion,
    pair_open_ended_results,
)
from quiz_tutor.core.retry import get_retry_decorator


GRADER_URL = "http://grader.test/grade"


def test_single_choice_matches_correct_index(example_quiz):
    question = example_quiz.questions[0]
    assert grade_answer(question, [1]) is True
    assert grade_answer(question, [0]) is False
    assert grade_answer(question, [1, 2]) is False
    assert grade_answer(question, []) is False


def test_multiple_choice_has_no_partial_credit(multiple_question):
    assert grade_answer(multiple_question, [0, 2]) is True
    assert grade_answer(multiple_question, [2, 0]) is True
    assert grade_answer(multiple_question, [0]) is False
    assert grade_answer(multiple_question, [0, 1, 2]) is False
    assert grade_answer(multiple_question, [1, 3]) is False


def test_true_false_uses_boolean_equality():
    question = TrueFalseQuestion(id="t", prompt="The Earth orbits the Sun.", correct_answer=True)
    assert grade_answer(question, True) is True
    assert grade_answer(question, False) is False


@pytest.mark.parametrize("answer", [None, True, "1", [True], 1])
def test_wrong_answer_shape_is_incorrect_not_an_error(example_quiz, answer):
    assert grade_answer(example_quiz.questions[0], answer) is False


def test_true_false_rejects_non_boolean_answers():
    question = TrueFalseQuestion(id="t", prompt="Ice floats on water.", correct_answer=True)
    assert grade_answer(question, [1]) is False
    assert grade_answer(question, "true") is False
    assert grade_answer(question, None) is False


def test_open_ended_defers_to_oracle(example_quiz):
    assert grade_answer(example_quiz.questions[2], "anything") is None


def test_classify_outcome_open_ended():
    question = OpenEndedQuestion(id="o", prompt="Explain entropy.")
    assert classify_outcome(question, "x", graded("partial", 0.5)) == "partial"
    assert classify_outcome(question, "x", graded("correct", 1.0)) == "correct"
    assert classify_outcome(question, "x", graded("incorrect", 0.1)) == "incorrect"
    assert classify_outcome(question, "x", None) == "incorrect"


def test_legacy_single_answer_shapes_are_normalised():
    quiz = Quiz.model_validate({
        "questions": [
            {"id": "a", "type": "single", "question": "Pick B", "options": ["A", "B"], "correctAnswer": "B"},
            {"id": "b", "type": "single", "question": "Pick A", "options": ["A", "B"], "correctAnswer": 0},
        ]
    })
    assert quiz.questions[0].correct_answer == [1]
    assert quiz.questions[1].correct_answer == [0]
    assert isinstance(quiz.questions[0], SingleChoiceQuestion)


def test_quiz_rejects_out_of_range_and_duplicate_ids():
    with pytest.raises(ValueError):
        SingleChoiceQuestion(id="x", prompt="P", options=["A"], correct_answer=[3])
    with pytest.raises(ValueError):
        Quiz(questions=[
            OpenEndedQuestion(id="dup", prompt="One"),
            OpenEndedQuestion(id="dup", prompt="Two"),
        ])


def test_graded_question_sanitises_oracle_output():
    item = GradedQuestion.model_validate({
        "grade": "excellent",
        "score": "not a number",
        "feedback": "",
        "improvements": "read more",
        "weakAreas": ["recursion", None, "  "],
    })
    assert item.grade == "incorrect"
    assert item.score == 0.0
    assert item.feedback == "No feedback provided"
    assert item.improvements == []
    assert item.weak_areas == ["recursion"]

    assert GradedQuestion.model_validate({"grade": "correct", "score": 1.7}).score == 1.0
    assert GradedQuestion.model_validate({"grade": "partial", "score": -2}).score == 0.0


def test_pair_open_ended_results_keys_by_question_id():
    quiz = Quiz(questions=[
        OpenEndedQuestion(id="first", prompt="One"),
        TrueFalseQuestion(id="tf", prompt="Two", correct_answer=False),
        OpenEndedQuestion(id="second", prompt="Three"),
    ])
    results = [graded("correct", 1.0), graded("incorrect", 0.0)]
    paired = pair_open_ended_results(quiz, results)
    assert paired == {"first": results[0], "second": results[1]}


def test_extract_improvements_deduplicates_in_order():
    results = [
        graded("partial", 0.5, improvements=["cite sources", "be concise"]),
        graded("incorrect", 0.0, improvements=["be concise", "define terms"]),
    ]
    assert extract_improvements(results) == ["cite sources", "be concise", "define terms"]


async def test_empty_batch_is_a_precondition_violation():
    with pytest.raises(InvalidInput):
        await FakeGrader().grade_batch([])


async def test_misaligned_batch_is_reported_as_unavailable():
    grader = FakeGrader(results=[graded("correct", 1.0)])
    items = [GradingRequestItem(question="a", answer="b"), GradingRequestItem(question="c", answer="d")]
    with pytest.raises(OracleUnavailable):
        await grader.grade_batch(items)


async def test_llm_grader_parses_graded_array():
    llm = FakeLLM(payload={"graded": [
        {"grade": "partial", "score": 0.6, "feedback": "Close", "improvements": [], "weakAreas": ["terms"]},
    ]})
    grader = LLMOpenEndedGrader(llm_provider=llm)
    result = await grader.grade_batch([GradingRequestItem(question="Define osmosis", answer="water", context="ref")])

    assert result[0].grade == "partial"
    assert result[0].weak_areas == ["terms"]
    assert "Q1: Define osmosis" in llm.prompts[0]
    assert "Expected/Context: ref" in llm.prompts[0]


async def test_llm_grader_failure_becomes_oracle_unavailable():
    grader = LLMOpenEndedGrader(llm_provider=FakeLLM(error=RuntimeError("quota exceeded")))
    with pytest.raises(OracleUnavailable):
        await grader.grade_batch([GradingRequestItem(question="q", answer="a")])


def _http_grader(handler) -> HttpOpenEndedGrader:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpOpenEndedGrader(url=GRADER_URL, client=client)


async def test_http_grader_posts_request_list():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"graded": [
            {"question": "q", "answer": "a", "grade": "correct", "score": 0.9,
             "feedback": "Good", "improvements": [], "weakAreas": []},
        ]})

    grader = _http_grader(handler)
    result = await grader.grade_batch([GradingRequestItem(question="q", answer="a", context="c")])

    assert seen == [[{"question": "q", "answer": "a", "context": "c"}]]
    assert result[0].grade == "correct"
    assert result[0].score == 0.9
    await grader.client.aclose()


async def test_http_grader_server_error():
    grader = _http_grader(lambda request: httpx.Response(500, json={"error": "boom"}))
    with pytest.raises(OracleUnavailable) as exc_info:
        await grader.grade_batch([GradingRequestItem(question="q", answer="a")])
    assert exc_info.value.details["status"] == 500
    assert exc_info.value.details["error"] == "boom"
    await grader.client.aclose()


async def test_http_grader_missing_graded_array():
    grader = _http_grader(lambda request: httpx.Response(200, json={"results": []}))
    with pytest.raises(OracleUnavailable):
        await grader.grade_batch([GradingRequestItem(question="q", answer="a")])
    await grader.client.aclose()


async def test_http_grader_misaligned_response():
    grader = _http_grader(lambda request: httpx.Response(200, json={"graded": []}))
    items = [GradingRequestItem(question="q1", answer="a1"), GradingRequestItem(question="q2", answer="a2")]
    with pytest.raises(OracleUnavailable):
        await grader.grade_batch(items)
    await grader.client.aclose()


def test_http_grader_requires_url():
    with pytest.raises(InvalidInput):
        HttpOpenEndedGrader(url="")


async def test_transport_retry_only_covers_transport_errors():
    calls = []

    @get_retry_decorator(max_attempts=3, wait_strategy="random_exponential",
                         exceptions=(httpx.TransportError,), max_wait=0.01)
    async def flaky(error):
        calls.append(error)
        if len(calls) < 3:
            raise error
        return "ok"

    assert await flaky(httpx.ConnectError("refused")) == "ok"
    assert len(calls) == 3

    calls.clear()
    with pytest.raises(ValueError):
        await flaky(ValueError("bad payload"))
    assert len(calls) == 1
