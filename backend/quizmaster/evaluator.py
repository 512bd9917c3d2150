from __future__ import annotations

from typing import Any, List, Union

from .errors import AnswerFormatError
from .schemas import MCQ_OPTION_COUNT, McqQuestion, TextQuestion


AnyQuestion = Union[McqQuestion, TextQuestion]


def normalize_answer(question: AnyQuestion, raw: Any) -> Union[List[int], str]:
    """Coerce a submitted answer into the shape stored on the question.

    MCQ answers become a sorted list of unique option indices; text answers
    are stripped strings.
    """
    if isinstance(question, McqQuestion):
        if isinstance(raw, (str, bytes)) or not hasattr(raw, "__iter__"):
            raise AnswerFormatError("Select one or more options to answer a multiple-choice question.")
        selected = set()
        for item in raw:
            # bool is an int subclass; True/False are not option indices
            if isinstance(item, bool) or not isinstance(item, int):
                raise AnswerFormatError("Option selections must be option numbers.")
            if item < 0 or item >= MCQ_OPTION_COUNT:
                raise AnswerFormatError(f"Option {item} does not exist.")
            selected.add(item)
        if not selected:
            raise AnswerFormatError("Select at least one option.")
        return sorted(selected)

    if not isinstance(raw, str):
        raise AnswerFormatError("Type an answer to a short-answer question.")
    text = raw.strip()
    if not text:
        raise AnswerFormatError("The answer is empty.")
    return text


def evaluate(question: AnyQuestion, answer: Union[List[int], str]) -> bool:
    if isinstance(question, McqQuestion):
        # Exact set match; partial overlap earns nothing
        return set(answer) == set(question.correct_option_indices)
    # Short answers are not graded here. They count as correct and the
    # report pass compares them against the sample answer.
    return True
