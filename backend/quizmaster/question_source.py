"""Question generation boundary.

The orchestrator only ever talks to a `QuestionBatchSource`. The Gemini
implementation turns uploaded documents into a prompt, asks for a JSON array
of questions and validates every item before handing the batch back.
"""
from __future__ import annotations

import abc
import json
import logging
import re
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from .errors import GenerationError
from .gemini_client import GeminiClient, inline_part, text_part
from .schemas import (
    Difficulty,
    McqQuestion,
    MimeKind,
    PerformanceReport,
    QuestionType,
    SourceDocument,
    TextQuestion,
)


logger = logging.getLogger(__name__)

AnyQuestion = Union[McqQuestion, TextQuestion]

# How many recently seen prompts are passed back as "do not repeat"
AVOID_WINDOW = 5

DIFFICULTY_GUIDANCE: Dict[Difficulty, str] = {
    Difficulty.LOW: "Focus on basic recall, definitions, and explicit facts found in the text.",
    Difficulty.MEDIUM: "Focus on application of concepts, comparisons, and identifying relationships.",
    Difficulty.HIGH: "Focus on critical analysis, synthesis of multiple sections, and complex problem-solving.",
}

QUESTION_TYPE_RULES: Dict[QuestionType, str] = {
    QuestionType.MCQ: 'Every question must be multiple-choice ("kind": "mcq").',
    QuestionType.TEXT: 'Every question must be short-answer ("kind": "text").',
    QuestionType.BOTH: 'Mix multiple-choice ("kind": "mcq") and short-answer ("kind": "text") questions.',
}

_QUESTION_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "kind": {"type": "STRING", "enum": ["mcq", "text"]},
        "question": {"type": "STRING"},
        "options": {"type": "ARRAY", "items": {"type": "STRING"}},
        "correctIndices": {"type": "ARRAY", "items": {"type": "INTEGER"}},
        "sampleAnswer": {"type": "STRING"},
        "explanation": {"type": "STRING"},
        "difficulty": {"type": "STRING", "enum": [d.value for d in Difficulty]},
    },
    "required": ["kind", "question", "explanation", "difficulty"],
}

REPORT_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "overallPerformance": {"type": "STRING"},
        "strengths": {"type": "ARRAY", "items": {"type": "STRING"}},
        "weaknesses": {"type": "ARRAY", "items": {"type": "STRING"}},
        "recommendations": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["overallPerformance", "strengths", "weaknesses", "recommendations"],
}


class QuestionBatchSource(abc.ABC):
    """What the orchestrator needs from a question generator."""

    @abc.abstractmethod
    async def generate(
        self,
        documents: Sequence[SourceDocument],
        desired_count: int,
        difficulties: Sequence[Difficulty],
        question_type: QuestionType,
        *,
        avoid: Sequence[str] = (),
    ) -> List[AnyQuestion]:
        """Return exactly `desired_count` questions or raise GenerationError."""

    @abc.abstractmethod
    async def analyze(self, history: Sequence[AnyQuestion]) -> PerformanceReport:
        """Write a performance report over answered questions or raise GenerationError."""


def _extract_json_block(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if code_block:
        try:
            return json.loads(code_block.group(1))
        except json.JSONDecodeError:
            pass
    # First array or object in the text, whichever opens first
    starts = [i for i in (text.find("["), text.find("{")) if i != -1]
    if starts:
        first = min(starts)
        closer = "]" if text[first] == "[" else "}"
        last = text.rfind(closer)
        if last > first:
            try:
                return json.loads(text[first : last + 1])
            except json.JSONDecodeError:
                pass
    raise GenerationError("The question generator did not return valid JSON.")


def build_question_prompt(
    desired_count: int,
    difficulties: Sequence[Difficulty],
    question_type: QuestionType,
    avoid: Sequence[str] = (),
) -> str:
    guidance = "\n".join(f"   - {d.value}: {DIFFICULTY_GUIDANCE[d]}" for d in difficulties)
    recent = [p for p in avoid if p][-AVOID_WINDOW:]
    avoid_rule = " | ".join(recent) if recent else "none"
    return (
        "Act as a professional educational assessment designer.\n"
        f"Create EXACTLY {desired_count} high-quality questions from the attached study documents.\n\n"
        "STRICT RULES:\n"
        f"1. Allowed difficulties (set \"difficulty\" on every question to one of these):\n{guidance}\n"
        f"2. {QUESTION_TYPE_RULES[question_type]}\n"
        "3. Multiple-choice questions have exactly 4 distinct options in \"options\" and list every correct "
        "option position (0-3) in \"correctIndices\". At least one option must be correct; multiple select is allowed.\n"
        "4. Short-answer questions give a model answer in \"sampleAnswer\" and no options.\n"
        f"5. Do NOT repeat or closely mimic these questions: {avoid_rule}.\n"
        "6. The explanation must be pedagogical, explaining why the correct answers are right and why distractors are wrong.\n"
        "7. Output strictly a JSON array of question objects, no markdown, no commentary."
    )


def build_report_prompt(history: Sequence[AnyQuestion]) -> str:
    lines: List[str] = []
    for number, q in enumerate(history, start=1):
        if isinstance(q, McqQuestion):
            chosen = ", ".join(q.options[i] for i in (q.user_answer or [])) or "(none)"
            expected = ", ".join(q.options[i] for i in q.correct_option_indices)
            verdict = "correct" if q.is_correct else "incorrect"
            lines.append(
                f"{number}. [multiple-choice, {q.difficulty.value}] {q.prompt}\n"
                f"   Student chose: {chosen}\n   Correct: {expected}\n   Result: {verdict}"
            )
        else:
            lines.append(
                f"{number}. [short-answer, {q.difficulty.value}] {q.prompt}\n"
                f"   Student wrote: {q.user_answer}\n   Sample answer: {q.sample_answer}\n"
                "   Result: grade this answer yourself against the sample answer"
            )
    return (
        "You are an experienced tutor reviewing a student's exam.\n"
        "Short-answer responses have not been graded yet: compare each one with its sample answer "
        "and take that judgement into account.\n\n"
        "Exam answers:\n" + "\n".join(lines) + "\n\n"
        "Return ONLY a JSON object with keys overallPerformance (a short paragraph), strengths, weaknesses and "
        "recommendations (each a non-empty array of short strings)."
    )


def _to_question(item: Any, question_type: QuestionType, difficulties: Sequence[Difficulty]) -> AnyQuestion:
    if not isinstance(item, dict):
        raise GenerationError("The question generator returned a malformed question.")
    kind = item.get("kind") or ("mcq" if item.get("options") else "text")
    if question_type == QuestionType.MCQ and kind != "mcq":
        raise GenerationError("The question generator returned a short-answer question for a multiple-choice exam.")
    if question_type == QuestionType.TEXT and kind != "text":
        raise GenerationError("The question generator returned a multiple-choice question for a short-answer exam.")

    difficulty = item.get("difficulty")
    if not difficulty and len(difficulties) == 1:
        difficulty = difficulties[0].value
    allowed = {d.value for d in difficulties}
    if difficulty not in allowed:
        raise GenerationError(f"The question generator returned an unexpected difficulty: {difficulty!r}.")

    base = {
        "id": uuid.uuid4().hex[:10],
        "prompt": str(item.get("question") or "").strip(),
        "explanation": str(item.get("explanation") or "").strip(),
        "difficulty": difficulty,
    }
    try:
        if kind == "mcq":
            return McqQuestion(
                **base,
                options=[str(o).strip() for o in item.get("options") or []],
                correct_option_indices=item.get("correctIndices") or [],
            )
        if kind == "text":
            return TextQuestion(**base, sample_answer=str(item.get("sampleAnswer") or "").strip())
    except ValidationError as exc:
        logger.warning("Rejected generated %s question: %s", kind, exc.errors())
        raise GenerationError("The question generator returned an invalid question.") from exc
    raise GenerationError(f"The question generator returned an unknown question kind: {kind!r}.")


def _document_parts(documents: Sequence[SourceDocument]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for doc in documents:
        if doc.mime_kind == MimeKind.PDF:
            parts.append(inline_part("application/pdf", doc.payload))
        else:
            parts.append(text_part(f"Document \"{doc.name}\":\n{doc.payload}"))
    return parts


def _report_items(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key)
    if not isinstance(value, list):
        raise GenerationError(f"The performance report has no list of {key}.")
    return [str(item).strip() for item in value if str(item).strip()]


class GeminiQuestionSource(QuestionBatchSource):
    def __init__(self, client_factory: Optional[Callable[[], GeminiClient]] = None) -> None:
        self._client_factory = client_factory or GeminiClient

    def _open_client(self) -> GeminiClient:
        try:
            return self._client_factory()
        except ValueError as exc:
            raise GenerationError("The question generator is not configured.") from exc

    async def generate(
        self,
        documents: Sequence[SourceDocument],
        desired_count: int,
        difficulties: Sequence[Difficulty],
        question_type: QuestionType,
        *,
        avoid: Sequence[str] = (),
    ) -> List[AnyQuestion]:
        if desired_count < 1:
            raise GenerationError("At least one question must be requested.")
        prompt = build_question_prompt(desired_count, difficulties, question_type, avoid)
        parts = _document_parts(documents) + [text_part(prompt)]
        schema = {"type": "ARRAY", "items": _QUESTION_ITEM_SCHEMA, "minItems": desired_count, "maxItems": desired_count}

        client = self._open_client()
        try:
            raw = await client.generate_multimodal(parts, response_schema=schema)
        except (httpx.HTTPError, RuntimeError) as exc:
            logger.warning("Question generation failed: %s", exc)
            raise GenerationError("Failed to generate questions. Please try again.") from exc
        finally:
            await client.aclose()

        data = _extract_json_block(raw)
        if isinstance(data, dict) and isinstance(data.get("questions"), list):
            data = data["questions"]
        if not isinstance(data, list):
            raise GenerationError("The question generator did not return a list of questions.")
        if len(data) != desired_count:
            # A short batch would break indexing in bounded sessions
            raise GenerationError(
                f"The question generator returned {len(data)} questions instead of {desired_count}."
            )
        questions = [_to_question(item, question_type, difficulties) for item in data]
        logger.info("Generated %d %s questions", len(questions), question_type.value)
        return questions

    async def analyze(self, history: Sequence[AnyQuestion]) -> PerformanceReport:
        answered = [q for q in history if q.user_answer is not None]
        if not answered:
            raise GenerationError("There are no answered questions to analyze.")

        client = self._open_client()
        try:
            raw = await client.generate(build_report_prompt(answered), response_schema=REPORT_SCHEMA)
        except (httpx.HTTPError, RuntimeError) as exc:
            logger.warning("Report generation failed: %s", exc)
            raise GenerationError("Failed to generate the performance report.") from exc
        finally:
            await client.aclose()

        data = _extract_json_block(raw)
        if not isinstance(data, dict):
            raise GenerationError("The report generator returned an unexpected format.")
        try:
            return PerformanceReport(
                overall_performance=str(data.get("overallPerformance") or "").strip(),
                strengths=_report_items(data, "strengths"),
                weaknesses=_report_items(data, "weaknesses"),
                recommendations=_report_items(data, "recommendations"),
            )
        except ValidationError as exc:
            raise GenerationError("The performance report was incomplete.") from exc
