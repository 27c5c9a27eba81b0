"""
Quiz question generation: validates LLM-proposed candidates and keeps asking
for more until the requested count is met or the attempt budget runs out
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from quiz_tutor.config import settings
from quiz_tutor.core.exceptions import (
    ConfigurationError,
    GenerationShortfall,
    InvalidInput,
    LLMError,
    MalformedCandidate,
)
from quiz_tutor.core.llm import LLMProvider, get_llm_provider
from quiz_tutor.core.logging import get_logger, log_execution_time, metrics_logger
from quiz_tutor.core.questions import (
    MultipleChoiceQuestion,
    OpenEndedQuestion,
    Question,
    SingleChoiceQuestion,
    TrueFalseQuestion,
)


logger = get_logger(__name__)


ALLOWED_TYPES = {"single", "multiple", "true_false", "open_ended"}
DIFFICULTIES = {"easy", "medium", "hard"}


class QuestionTypes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    multiple_choice: bool = Field(default=True, validation_alias=AliasChoices("multiple_choice", "multipleChoice"))
    true_false: bool = Field(default=False, validation_alias=AliasChoices("true_false", "trueFalse"))
    open_ended: bool = Field(default=False, validation_alias=AliasChoices("open_ended", "openEnded"))


class GenerationSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    number_of_questions: int = Field(
        default_factory=lambda: settings.default_number_of_questions,
        validation_alias=AliasChoices("number_of_questions", "numberOfQuestions")
    )
    number_of_choices: int = Field(
        default_factory=lambda: settings.default_number_of_choices,
        validation_alias=AliasChoices("number_of_choices", "numberOfChoices")
    )
    question_types: QuestionTypes = Field(
        default_factory=QuestionTypes,
        validation_alias=AliasChoices("question_types", "questionTypes")
    )


class GenerationRequest(BaseModel):
    topic: str
    difficulty: str = "medium"
    # Weak areas the questions should focus on
    contexts: List[str] = Field(default_factory=list)
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


class GenerationMetadata(BaseModel):
    topic: str
    difficulty: str
    contexts: List[str]
    requested_questions: int
    generated_questions: int
    attempts: int
    generated_at: datetime


class GeneratedQuiz(BaseModel):
    questions: List[Question]
    metadata: GenerationMetadata


def validate_request(request: GenerationRequest) -> None:
    if not request.topic or not request.topic.strip():
        raise InvalidInput("topic is required")
    if request.difficulty not in DIFFICULTIES:
        raise InvalidInput("Invalid difficulty level. Must be: easy, medium, or hard",
                           {"difficulty": request.difficulty})
    opts = request.settings
    if opts.number_of_questions < 1:
        raise InvalidInput("number_of_questions must be at least 1",
                           {"number_of_questions": opts.number_of_questions})
    if opts.number_of_choices < 2:
        raise InvalidInput("number_of_choices must be at least 2",
                           {"number_of_choices": opts.number_of_choices})
    types = opts.question_types
    if not (types.multiple_choice or types.true_false or types.open_ended):
        raise InvalidInput("At least one question type must be selected")


class CandidateValidator:
    """Turn raw candidate dicts into Questions, rejecting any malformed one whole."""

    def __init__(self, number_of_choices: int):
        self.number_of_choices = number_of_choices

    def validate(self, candidate: Any, question_id: str) -> Question:
        if not isinstance(candidate, dict):
            raise MalformedCandidate("not_an_object")
        text = candidate.get("question")
        if not isinstance(text, str) or not text.strip():
            raise MalformedCandidate("missing_question")
        qtype = candidate.get("type")
        if qtype not in ALLOWED_TYPES:
            raise MalformedCandidate("missing_type", {"type": qtype})
        # False is a legitimate true/false answer, only absence counts as missing
        if candidate.get("answer") is None:
            raise MalformedCandidate("missing_answer")

        answer = candidate["answer"]
        wrong_answers = candidate.get("wrongAnswers")
        if not isinstance(wrong_answers, dict):
            wrong_answers = {}

        try:
            if qtype == "true_false":
                return self._true_false(question_id, text, answer, wrong_answers)
            if qtype == "open_ended":
                return self._open_ended(question_id, text, answer)
            return self._choice(question_id, text, candidate.get("choices"), answer, wrong_answers)
        except ValidationError as e:
            raise MalformedCandidate("schema_violation", {"error": str(e)}) from e

    def filter_valid(self, candidates: List[Any], first_index: int = 1) -> List[Question]:
        valid: List[Question] = []
        for candidate in candidates:
            try:
                valid.append(self.validate(candidate, f"q{first_index + len(valid)}"))
            except MalformedCandidate as e:
                metrics_logger.log_candidate_rejected(e.reason)
        return valid

    @staticmethod
    def _true_false(question_id: str, text: str, answer: Any, wrong_answers: Dict[str, Any]) -> Question:
        if not isinstance(answer, bool):
            raise MalformedCandidate("answer_not_boolean")
        explanation = f"Correct answer: {'True' if answer else 'False'}."
        wrong = wrong_answers.get("false" if answer else "true")
        if wrong:
            explanation = f"{explanation} {wrong}"
        return TrueFalseQuestion(id=question_id, prompt=text, correct_answer=answer, explanation=explanation)

    @staticmethod
    def _open_ended(question_id: str, text: str, answer: Any) -> Question:
        if not isinstance(answer, str) or not answer.strip():
            raise MalformedCandidate("answer_not_text")
        return OpenEndedQuestion(
            id=question_id,
            prompt=text,
            correct_answer=answer,
            explanation=f"Model answer: {answer}"
        )

    def _choice(self, question_id: str, text: str, choices: Any, answer: Any,
                wrong_answers: Dict[str, Any]) -> Question:
        if not isinstance(choices, list) or not all(isinstance(c, str) for c in choices):
            raise MalformedCandidate("missing_choices")
        if len(choices) != self.number_of_choices:
            raise MalformedCandidate("choice_count", {"expected": self.number_of_choices, "got": len(choices)})

        # The answer's shape decides single vs multiple, whatever the declared type
        if isinstance(answer, str):
            answers = [answer]
            multiple = False
        elif isinstance(answer, list) and answer:
            answers = answer
            multiple = True
        else:
            raise MalformedCandidate("unresolvable_answer")

        indices: List[int] = []
        for value in answers:
            if not isinstance(value, str) or value not in choices:
                raise MalformedCandidate("unresolvable_answer", {"answer": value})
            idx = choices.index(value)
            if idx not in indices:
                indices.append(idx)

        parts = [
            f"Correct answers: {', '.join(answers)}." if multiple else f"Correct answer: {answer}."
        ]
        for choice, why in wrong_answers.items():
            parts.append(f"{choice}: {why}")
        explanation = " ".join(parts)

        cls = MultipleChoiceQuestion if multiple else SingleChoiceQuestion
        return cls(id=question_id, prompt=text, options=choices, correct_answer=indices, explanation=explanation)


class GenerationOracle(ABC):
    """Proposes raw candidate questions ({question, type, answer, choices?})"""

    @abstractmethod
    async def propose(self, request: GenerationRequest, count: int) -> List[Dict[str, Any]]:
        pass


CANDIDATES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "questions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string"},
                    "type": {"type": "string", "enum": sorted(ALLOWED_TYPES)},
                    "choices": {"type": "array", "items": {"type": "string"}},
                    "answer": {},
                    "wrongAnswers": {"type": "object"}
                },
                "required": ["question", "type", "answer"]
            }
        }
    },
    "required": ["questions"]
}


class LLMGenerationOracle(GenerationOracle):
    """Ask the LLM for candidate quiz questions"""

    system_prompt = (
        "You are an AI tutor that generates quiz questions. Support single-answer multiple choice, "
        "multiple-answer multiple choice, true/false, and open-ended questions. For multiple-answer "
        "questions, each answer must exactly match one option in the choices array. For true/false "
        "questions, use boolean values. For open-ended questions, provide comprehensive model answers."
    )

    def __init__(self, llm_provider: Optional[LLMProvider] = None):
        self.llm = llm_provider or get_llm_provider()

    @staticmethod
    def build_prompt(request: GenerationRequest, count: int) -> str:
        opts = request.settings
        types = opts.question_types
        type_lines = []
        examples = []
        if types.multiple_choice:
            type_lines.append(
                f"- Multiple choice questions with exactly {opts.number_of_choices} distinct choices "
                "(type \"single\" with a string answer, or \"multiple\" with an array of answers "
                "and \"Select all that apply\" phrasing)"
            )
            examples.append(
                '{"question": "Which planet is closest to the Sun?", "type": "single", '
                '"choices": ["Mercury", "Venus", "Earth", "Mars"], "answer": "Mercury", '
                '"wrongAnswers": {"Venus": "Second planet from the Sun"}}'
            )
            examples.append(
                '{"question": "Select all that apply: which are primary colors?", "type": "multiple", '
                '"choices": ["Red", "Green", "Blue", "Purple"], "answer": ["Red", "Blue"], '
                '"wrongAnswers": {"Purple": "Mix of red and blue"}}'
            )
        if types.true_false:
            type_lines.append("- True/False questions (type \"true_false\", boolean answer, no choices)")
            examples.append(
                '{"question": "Water boils at 100 degrees Celsius at sea level.", "type": "true_false", '
                '"answer": true, "wrongAnswers": {"false": "At 1 atm water boils at 100 C"}}'
            )
        if types.open_ended:
            type_lines.append(
                "- Open-ended questions that test deeper understanding "
                "(type \"open_ended\", detailed model answer string, no choices)"
            )
            examples.append(
                '{"question": "Explain why the sky appears blue.", "type": "open_ended", '
                '"answer": "Shorter blue wavelengths scatter more strongly in the atmosphere '
                '(Rayleigh scattering).", "wrongAnswers": {}}'
            )

        focus = ""
        if request.contexts:
            focus = f"Focus specifically on these weak areas: {', '.join(request.contexts)}\n"

        return (
            f"Generate {count} quiz questions for the topic \"{request.topic}\" "
            f"at {request.difficulty} difficulty level.\n"
            f"{focus}\n"
            "Use these question types:\n" + "\n".join(type_lines) + "\n\n"
            "Guidelines:\n"
            "- Every answer string must exactly match an item of the choices array\n"
            "- Provide short explanations for wrong answers in \"wrongAnswers\" keyed by choice "
            "(\"true\"/\"false\" for true/false questions, empty object for open-ended)\n"
            "- Keep questions clear and unambiguous; avoid trick questions\n"
            "- Make sure the correct answer(s) are actually correct\n\n"
            "Example entries:\n" + "\n".join(examples) + "\n\n"
            "Return the questions under the \"questions\" key."
        )

    async def propose(self, request: GenerationRequest, count: int) -> List[Dict[str, Any]]:
        data = await self.llm.generate_json(
            prompt=self.build_prompt(request, count),
            schema=CANDIDATES_SCHEMA,
            system_prompt=self.system_prompt,
            root_key="questions"
        )
        questions = data.get("questions")
        if not isinstance(questions, list) or not questions:
            raise LLMError("Generation oracle returned no questions")
        return questions


class QuestionGenerator:
    """Collect validated questions across bounded regeneration attempts.

    Each attempt over-requests candidates to absorb validation attrition.
    The first attempt's oracle error propagates; later ones are retried.
    Fewer than ``min_fraction`` of the requested questions is a hard failure;
    anything between that and the full count is returned as is.
    """

    def __init__(
        self,
        oracle: Optional[GenerationOracle] = None,
        max_attempts: Optional[int] = None,
        overrequest_factor: Optional[float] = None,
        overrequest_cap: Optional[int] = None,
        min_fraction: Optional[float] = None,
    ):
        self._oracle = oracle
        self.max_attempts = settings.generation_max_attempts if max_attempts is None else max_attempts
        self.overrequest_factor = (
            settings.generation_overrequest_factor if overrequest_factor is None else overrequest_factor
        )
        self.overrequest_cap = settings.generation_overrequest_cap if overrequest_cap is None else overrequest_cap
        self.min_fraction = settings.generation_min_fraction if min_fraction is None else min_fraction

        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1", {"max_attempts": self.max_attempts})
        if self.overrequest_factor < 1:
            raise ConfigurationError(
                "overrequest_factor must be at least 1", {"overrequest_factor": self.overrequest_factor}
            )
        if self.overrequest_cap < 0:
            raise ConfigurationError("overrequest_cap cannot be negative", {"overrequest_cap": self.overrequest_cap})
        if not 0 < self.min_fraction <= 1:
            raise ConfigurationError("min_fraction must be in (0, 1]", {"min_fraction": self.min_fraction})

    @property
    def oracle(self) -> GenerationOracle:
        if self._oracle is None:
            self._oracle = LLMGenerationOracle()
        return self._oracle

    def batch_size(self, needed: int) -> int:
        return min(math.ceil(needed * self.overrequest_factor), needed + self.overrequest_cap)

    def minimum_acceptable(self, requested: int) -> int:
        return math.ceil(requested * self.min_fraction)

    @log_execution_time
    async def generate(self, request: GenerationRequest) -> GeneratedQuiz:
        validate_request(request)
        target = request.settings.number_of_questions
        validator = CandidateValidator(request.settings.number_of_choices)

        collected: List[Question] = []
        attempts = 0
        while len(collected) < target and attempts < self.max_attempts:
            attempts += 1
            needed = target - len(collected)
            count = self.batch_size(needed)
            try:
                raw = await self.oracle.propose(request, count)
            except Exception as e:
                metrics_logger.log_generation_attempt_failed(attempts, str(e))
                if attempts == 1:
                    raise
                continue

            valid = validator.filter_valid(raw, first_index=len(collected) + 1)
            metrics_logger.log_generation_attempt(
                attempt=attempts,
                needed=needed,
                requested=count,
                raw_count=len(raw),
                valid_count=len(valid)
            )
            collected.extend(valid)

        # Surplus is dropped in generation order
        collected = collected[:target]

        if not collected:
            metrics_logger.log_generation_shortfall(request.topic, target, 0)
            raise GenerationShortfall(
                "Failed to generate any valid questions. Please try again with different settings or topic.",
                achieved=0,
                requested=target
            )
        if len(collected) < self.minimum_acceptable(target):
            metrics_logger.log_generation_shortfall(request.topic, target, len(collected))
            raise GenerationShortfall(
                f"Could only generate {len(collected)} valid questions out of {target} requested. "
                "Please try again with different settings.",
                achieved=len(collected),
                requested=target
            )
        if len(collected) < target:
            logger.warning("Returning fewer questions than requested",
                           requested=target,
                           generated=len(collected))

        questions = [q.model_copy(update={"id": f"q{i}"}) for i, q in enumerate(collected, start=1)]
        metrics_logger.log_generation_complete(request.topic, target, len(questions), attempts)
        return GeneratedQuiz(
            questions=questions,
            metadata=GenerationMetadata(
                topic=request.topic,
                difficulty=request.difficulty,
                contexts=request.contexts,
                requested_questions=target,
                generated_questions=len(questions),
                attempts=attempts,
                generated_at=datetime.now(timezone.utc)
            )
        )
