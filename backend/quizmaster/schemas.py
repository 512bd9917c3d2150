from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


MCQ_OPTION_COUNT = 4


class Stage(str, Enum):
    CHOOSING_MODE = "choosing_mode"
    UPLOADING = "uploading"
    CONFIGURING = "configuring"
    QUIZ = "quiz"
    SUMMARY = "summary"
    REPORT = "report"


class Mode(str, Enum):
    QUIZ = "quiz"  # quick-quiz: unbounded, one live question at a time
    EXAM = "exam"  # bounded, timed, ends with a report


class Difficulty(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QuestionType(str, Enum):
    MCQ = "mcq"
    TEXT = "text"
    BOTH = "both"


class MimeKind(str, Enum):
    PDF = "pdf"
    DOCX = "docx"


class SourceDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    mime_kind: MimeKind
    # base64 for PDFs, extracted raw text for DOCX
    payload: str = Field(repr=False)
    size_bytes: int = Field(ge=0)


class SessionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_count: int = Field(default=10, ge=1)
    difficulties: List[Difficulty] = Field(default_factory=lambda: [Difficulty.MEDIUM], min_length=1)
    question_type: QuestionType = QuestionType.MCQ
    time_limit_minutes: int = Field(default=20, ge=1)

    @field_validator("difficulties")
    @classmethod
    def _dedupe_difficulties(cls, value: List[Difficulty]) -> List[Difficulty]:
        return list(dict.fromkeys(value))


class _QuestionBase(BaseModel):
    id: str
    prompt: str = Field(min_length=1)
    explanation: str = ""
    difficulty: Difficulty
    is_correct: Optional[bool] = None


class McqQuestion(_QuestionBase):
    kind: Literal["mcq"] = "mcq"
    options: List[str] = Field(min_length=MCQ_OPTION_COUNT, max_length=MCQ_OPTION_COUNT)
    correct_option_indices: List[int] = Field(min_length=1)
    user_answer: Optional[List[int]] = None

    @field_validator("correct_option_indices")
    @classmethod
    def _check_indices(cls, value: List[int]) -> List[int]:
        if len(set(value)) != len(value):
            raise ValueError("correct_option_indices must not repeat")
        if any(i < 0 or i >= MCQ_OPTION_COUNT for i in value):
            raise ValueError(f"correct_option_indices must be within 0..{MCQ_OPTION_COUNT - 1}")
        return sorted(value)


class TextQuestion(_QuestionBase):
    kind: Literal["text"] = "text"
    sample_answer: str = Field(min_length=1)
    user_answer: Optional[str] = None


Question = Annotated[Union[McqQuestion, TextQuestion], Field(discriminator="kind")]


class ScoreState(BaseModel):
    correct: int = 0
    total: int = 0


class PerformanceReport(BaseModel):
    overall_performance: str = Field(min_length=1)
    strengths: List[str] = Field(min_length=1)
    weaknesses: List[str] = Field(min_length=1)
    recommendations: List[str] = Field(min_length=1)


class Notice(BaseModel):
    """User-visible message describing why the last action did not go through."""

    kind: Literal["validation", "ingestion", "generation", "stale_session", "busy"]
    message: str


class SessionState(BaseModel):
    """The aggregate root. Only the orchestrator writes to it."""

    session_id: str
    stage: Stage = Stage.CHOOSING_MODE
    mode: Optional[Mode] = None
    documents: List[SourceDocument] = Field(default_factory=list)
    document_names: List[str] = Field(default_factory=list)
    config: Optional[SessionConfig] = None
    difficulty: Optional[Difficulty] = None
    questions: List[Question] = Field(default_factory=list)
    current_question_index: int = 0
    history: List[Question] = Field(default_factory=list)
    score: ScoreState = Field(default_factory=ScoreState)
    is_generating: bool = False
    remaining_seconds: Optional[int] = None
    report: Optional[PerformanceReport] = None
    notice: Optional[Notice] = None
    epoch: int = 0

    @property
    def current_question(self) -> Optional[Union[McqQuestion, TextQuestion]]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None


class SessionSnapshot(BaseModel):
    """What the UI gets to see: the session without document payloads."""

    session_id: str
    stage: Stage
    mode: Optional[Mode]
    document_names: List[str]
    config: Optional[SessionConfig]
    difficulty: Optional[Difficulty]
    questions: List[Question]
    current_question_index: int
    current_question: Optional[Question]
    history: List[Question]
    score: ScoreState
    is_generating: bool
    remaining_seconds: Optional[int]
    report: Optional[PerformanceReport]
    notice: Optional[Notice]

    @classmethod
    def of(cls, state: SessionState) -> "SessionSnapshot":
        return cls(
            session_id=state.session_id,
            stage=state.stage,
            mode=state.mode,
            document_names=list(state.document_names),
            config=state.config,
            difficulty=state.difficulty,
            questions=list(state.questions),
            current_question_index=state.current_question_index,
            current_question=state.current_question,
            history=list(state.history),
            score=state.score,
            is_generating=state.is_generating,
            remaining_seconds=state.remaining_seconds,
            report=state.report,
            notice=state.notice,
        )


class ModeRequest(BaseModel):
    mode: Mode


class AnswerRequest(BaseModel):
    question_id: Optional[str] = None
    answer: Union[List[int], str]


class DifficultyRequest(BaseModel):
    difficulty: Difficulty
