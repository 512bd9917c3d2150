"""Session state machine.

    choosing_mode -> uploading -> configuring -> quiz -> summary -> report

Exams are bounded: a fixed question list, a countdown, and a performance
report at the end. Quick quizzes are unbounded: questions arrive in fixed-size
batches until the user stops, and the difficulty can be switched mid-stream.

Every write to the session goes through `_commit`, which refuses updates made
on behalf of an older epoch. `reset()` and `select_mode()` bump the epoch, and so
does `close()`. A generator response that arrives after the session was thrown
away is therefore dropped instead of being applied to the new one.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set, Union

from pydantic import ValidationError

from .errors import (
    AnswerFormatError,
    ConfigurationError,
    GenerationError,
    IngestionError,
    InvalidTransition,
    StaleSessionError,
)
from .evaluator import evaluate, normalize_answer
from .ingestion import check_upload_limits, check_upload_size
from .persistence import SessionStore
from .question_source import QuestionBatchSource
from .schemas import (
    Difficulty,
    McqQuestion,
    Mode,
    Notice,
    QuestionType,
    ScoreState,
    SessionConfig,
    SessionSnapshot,
    SessionState,
    SourceDocument,
    Stage,
    TextQuestion,
)
from .settings import settings
from .timer import CountdownTimer


logger = logging.getLogger(__name__)

AnyQuestion = Union[McqQuestion, TextQuestion]

# Countdown ticks are persisted this often (in seconds) rather than every tick
PERSIST_TICK_EVERY = 10

STALE_DOCUMENTS_MESSAGE = "Your uploaded documents are no longer available. Please upload them again."


def _describe(exc: ValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors()
    )
    return f"Invalid configuration: {problems}"


class SessionOrchestrator:
    def __init__(
        self,
        source: QuestionBatchSource,
        *,
        session_id: Optional[str] = None,
        store: Optional[SessionStore] = None,
        batch_size: Optional[int] = None,
        max_quiz_documents: Optional[int] = None,
        max_exam_documents: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
        tick_interval: float = 1.0,
    ) -> None:
        self._source = source
        self._store = store
        self._batch_size = batch_size or settings.quick_quiz_batch_size
        self._max_quiz_documents = max_quiz_documents or settings.quick_quiz_max_documents
        self._max_exam_documents = max_exam_documents or settings.exam_max_documents
        self._max_total_bytes = max_total_bytes or settings.max_upload_bytes
        self._tick_interval = tick_interval
        self._state = SessionState(session_id=session_id or uuid.uuid4().hex)
        self._timer: Optional[CountdownTimer] = None
        self._background: Set[asyncio.Task] = set()
        self._closed = False
        self._last_active = time.monotonic()

    @classmethod
    def restore(
        cls,
        source: QuestionBatchSource,
        store: SessionStore,
        session_id: str,
        **kwargs: Any,
    ) -> Optional["SessionOrchestrator"]:
        """Rebuild a session from the store.

        Document payloads are never stored, so the restored session has none;
        the next generation request hits the stale-session path. A running
        exam resumes its countdown. Must be called from inside the event loop.
        """
        payload = store.load(session_id)
        if payload is None:
            return None
        try:
            state = SessionState.model_validate({**payload, "session_id": session_id})
        except ValidationError:
            logger.warning("Stored session %s is unreadable, ignoring it", session_id, exc_info=True)
            return None
        orchestrator = cls(source, session_id=session_id, store=store, **kwargs)
        orchestrator._state = state
        if state.stage == Stage.QUIZ and state.mode == Mode.EXAM and state.remaining_seconds is not None:
            if state.remaining_seconds > 0:
                orchestrator._start_timer(state.remaining_seconds)
            else:
                orchestrator._on_expired(state.epoch)
        logger.info("Restored session %s at stage %s", session_id, state.stage.value)
        return orchestrator

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_active

    def touch(self) -> None:
        self._last_active = time.monotonic()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.of(self._state)

    # -- the single write path -------------------------------------------------

    def _replace(self, new_state: SessionState, *, persist: bool = True) -> None:
        old_stage = self._state.stage
        self._state = new_state
        self.touch()
        if new_state.stage != old_stage:
            logger.info("Session %s: %s -> %s", new_state.session_id, old_stage.value, new_state.stage.value)
        if persist and not self._closed and self._store is not None:
            self._store.save(new_state)

    def _commit(self, epoch: int, *, persist: bool = True, **changes: Any) -> bool:
        if epoch != self._state.epoch:
            logger.info("Dropping late update for superseded session epoch %d", epoch)
            return False
        self._replace(self._state.model_copy(update=changes), persist=persist)
        return True

    def _discard(self, **fields: Any) -> None:
        """Throw the session away and start a fresh epoch."""
        self._cancel_timer()
        for task in list(self._background):
            task.cancel()
        self._replace(SessionState(session_id=self._state.session_id, epoch=self._state.epoch + 1, **fields))

    # -- helpers -----------------------------------------------------------------

    def _require(self, stage: Stage, action: str) -> None:
        if self._state.stage != stage:
            raise InvalidTransition(f"Cannot {action} while the session is in '{self._state.stage.value}'.")

    def _reject(self, kind: str, message: str) -> SessionSnapshot:
        self._commit(self._state.epoch, notice=Notice(kind=kind, message=message))
        return self.snapshot()

    def _busy(self) -> SessionSnapshot:
        return self._reject("busy", "Questions are still being generated. Please wait.")

    def _ensure_documents(self) -> None:
        docs = self._state.documents
        if not docs or any(not d.payload for d in docs):
            raise StaleSessionError(STALE_DOCUMENTS_MESSAGE)

    def _fail_stale(self, exc: StaleSessionError) -> SessionSnapshot:
        logger.warning("Session %s lost its documents, returning to upload", self.session_id)
        self._cancel_timer()
        self._commit(
            self._state.epoch,
            stage=Stage.UPLOADING,
            documents=[],
            document_names=[],
            questions=[],
            current_question_index=0,
            history=[],
            score=ScoreState(),
            report=None,
            remaining_seconds=None,
            is_generating=False,
            notice=Notice(kind="stale_session", message=exc.message),
        )
        return self.snapshot()

    def _recent_prompts(self) -> List[str]:
        return [q.prompt for q in self._state.history] + [q.prompt for q in self._state.questions]

    async def _generate(
        self,
        count: int,
        difficulties: Sequence[Difficulty],
        question_type: QuestionType,
        avoid: Sequence[str] = (),
    ) -> List[AnyQuestion]:
        try:
            questions = await self._source.generate(
                self._state.documents, count, list(difficulties), question_type, avoid=list(avoid)
            )
        except GenerationError:
            raise
        except Exception as exc:
            logger.exception("Question source failed unexpectedly")
            raise GenerationError("Failed to generate questions. Please try again.") from exc
        questions = list(questions)
        if len(questions) != count:
            raise GenerationError(f"Expected {count} questions but received {len(questions)}.")
        return questions

    @staticmethod
    def _resolve_config(config: Union[SessionConfig, Mapping[str, Any]]) -> SessionConfig:
        if isinstance(config, SessionConfig):
            return config
        try:
            return SessionConfig.model_validate(config)
        except ValidationError as exc:
            raise ConfigurationError(_describe(exc)) from exc

    # -- countdown ---------------------------------------------------------------

    def _start_timer(self, seconds: int) -> None:
        self._cancel_timer()
        epoch = self._state.epoch
        self._timer = CountdownTimer(
            seconds,
            on_tick=lambda remaining: self._on_tick(epoch, remaining),
            on_expire=lambda: self._on_expired(epoch),
            interval=self._tick_interval,
        )
        self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_tick(self, epoch: int, remaining: int) -> None:
        self._commit(epoch, persist=remaining % PERSIST_TICK_EVERY == 0, remaining_seconds=remaining)

    def _on_expired(self, epoch: int) -> None:
        self._timer = None
        if not self._enter_summary(epoch):
            return
        logger.info("Time is up for session %s", self.session_id)
        if self._state.mode == Mode.EXAM:
            self._spawn(self._generate_report(epoch))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background work (report generation after time-out)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def close(self) -> None:
        """Stop the session for good.

        Pending generator calls still return, but the epoch moves on so their
        results are dropped, and nothing is written to the store any more.
        """
        self._closed = True
        self._cancel_timer()
        for task in list(self._background):
            task.cancel()
        self._state = self._state.model_copy(update={"epoch": self._state.epoch + 1, "is_generating": False})

    # -- end of session ----------------------------------------------------------

    def _enter_summary(self, epoch: int, notice: Optional[Notice] = None) -> bool:
        if epoch != self._state.epoch or self._state.stage != Stage.QUIZ:
            return False
        self._cancel_timer()
        return self._commit(epoch, stage=Stage.SUMMARY, is_generating=False, notice=notice)

    async def _end_session(self, epoch: int, notice: Optional[Notice] = None) -> SessionSnapshot:
        if self._enter_summary(epoch, notice) and self._state.mode == Mode.EXAM:
            await self._generate_report(epoch)
        return self.snapshot()

    async def _generate_report(self, epoch: int) -> None:
        answered = [q for q in self._state.history if q.user_answer is not None]
        if not answered:
            self._commit(
                epoch,
                notice=Notice(kind="validation", message="No questions were answered, so there is nothing to report on."),
            )
            return
        if not self._commit(epoch, is_generating=True):
            return
        try:
            report = await self._source.analyze(answered)
        except GenerationError as exc:
            self._commit(epoch, is_generating=False, notice=Notice(kind="generation", message=exc.message))
            return
        except Exception:
            logger.exception("Report generation failed unexpectedly")
            self._commit(
                epoch,
                is_generating=False,
                notice=Notice(kind="generation", message="Failed to generate the performance report."),
            )
            return
        self._commit(epoch, report=report, stage=Stage.REPORT, is_generating=False, notice=None)

    # -- intents -------------------------------------------------------------------

    def select_mode(self, mode: Union[Mode, str]) -> SessionSnapshot:
        mode = Mode(mode)
        self._require(Stage.CHOOSING_MODE, "choose a mode")
        self._discard(stage=Stage.UPLOADING, mode=mode)
        return self.snapshot()

    def _max_documents(self) -> int:
        return self._max_exam_documents if self._state.mode == Mode.EXAM else self._max_quiz_documents

    def precheck_upload(self, count: int, total_bytes: int) -> Optional[SessionSnapshot]:
        """Reject an upload from its file count and declared sizes alone.

        Returns the rejected snapshot, or None when the files may be read.
        """
        self._require(Stage.UPLOADING, "upload documents")
        try:
            check_upload_size(count, total_bytes, self._max_documents(), self._max_total_bytes)
        except IngestionError as exc:
            return self._reject("ingestion", exc.message)
        return None

    def upload(self, documents: Iterable[SourceDocument]) -> SessionSnapshot:
        self._require(Stage.UPLOADING, "upload documents")
        documents = list(documents)
        try:
            check_upload_limits(documents, self._max_documents(), self._max_total_bytes)
        except IngestionError as exc:
            return self._reject("ingestion", exc.message)
        self._commit(
            self._state.epoch,
            documents=documents,
            document_names=[d.name for d in documents],
            stage=Stage.CONFIGURING,
            notice=None,
        )
        return self.snapshot()

    async def start(self, config: Union[SessionConfig, Mapping[str, Any]]) -> SessionSnapshot:
        self._require(Stage.CONFIGURING, "start")
        if self._state.is_generating:
            return self._busy()
        try:
            config = self._resolve_config(config)
        except ConfigurationError as exc:
            return self._reject("validation", exc.message)
        exam = self._state.mode == Mode.EXAM
        if not exam:
            config = config.model_copy(update={"question_count": self._batch_size})
        try:
            self._ensure_documents()
        except StaleSessionError as exc:
            return self._fail_stale(exc)

        epoch = self._state.epoch
        self._commit(epoch, is_generating=True, config=config, notice=None)
        try:
            questions = await self._generate(config.question_count, config.difficulties, config.question_type)
        except GenerationError as exc:
            self._commit(
                epoch,
                is_generating=False,
                questions=[],
                current_question_index=0,
                stage=Stage.CONFIGURING,
                notice=Notice(kind="generation", message=exc.message),
            )
            return self.snapshot()

        seconds = config.time_limit_minutes * 60
        applied = self._commit(
            epoch,
            stage=Stage.QUIZ,
            questions=questions,
            current_question_index=0,
            history=[],
            score=ScoreState(),
            report=None,
            is_generating=False,
            difficulty=config.difficulties[0] if len(config.difficulties) == 1 else None,
            remaining_seconds=seconds if exam else None,
            notice=None,
        )
        if applied and exam:
            self._start_timer(seconds)
        return self.snapshot()

    def submit_answer(self, answer: Any, *, question_id: Optional[str] = None) -> SessionSnapshot:
        self._require(Stage.QUIZ, "answer")
        state = self._state
        question = state.current_question
        if question is None:
            raise InvalidTransition("There is no question to answer.")
        if question_id is not None and question_id != question.id:
            raise InvalidTransition("That question is no longer the current one.")
        if question.user_answer is not None:
            logger.debug("Ignoring second submission for question %s", question.id)
            return self.snapshot()
        try:
            normalized = normalize_answer(question, answer)
        except AnswerFormatError as exc:
            return self._reject("validation", exc.message)

        verdict = evaluate(question, normalized)
        answered = question.model_copy(update={"user_answer": normalized, "is_correct": verdict})
        questions = list(state.questions)
        questions[state.current_question_index] = answered
        self._commit(
            state.epoch,
            questions=questions,
            history=[*state.history, answered],
            score=ScoreState(correct=state.score.correct + int(verdict), total=state.score.total + 1),
            notice=None,
        )
        return self.snapshot()

    async def advance(self) -> SessionSnapshot:
        self._require(Stage.QUIZ, "move on")
        if self._state.is_generating:
            return self._busy()
        state = self._state
        if state.current_question_index + 1 < len(state.questions):
            self._commit(state.epoch, current_question_index=state.current_question_index + 1, notice=None)
            return self.snapshot()
        if state.mode == Mode.EXAM:
            return await self._end_session(state.epoch)
        return await self._next_batch()

    async def _next_batch(self) -> SessionSnapshot:
        try:
            self._ensure_documents()
        except StaleSessionError as exc:
            return self._fail_stale(exc)
        state = self._state
        epoch = state.epoch
        difficulties = [state.difficulty] if state.difficulty else list(state.config.difficulties)
        self._commit(epoch, is_generating=True, notice=None)
        try:
            questions = await self._generate(
                self._batch_size, difficulties, state.config.question_type, avoid=self._recent_prompts()
            )
        except GenerationError as exc:
            if not self._commit(epoch, is_generating=False):
                return self.snapshot()
            # No retry: a failed refill ends the quick quiz
            return await self._end_session(
                epoch, Notice(kind="generation", message=f"{exc.message} The quiz has ended.")
            )
        self._commit(epoch, questions=questions, current_question_index=0, is_generating=False, notice=None)
        return self.snapshot()

    async def change_difficulty(self, difficulty: Union[Difficulty, str]) -> SessionSnapshot:
        difficulty = Difficulty(difficulty)
        self._require(Stage.QUIZ, "change difficulty")
        if self._state.mode != Mode.QUIZ:
            raise InvalidTransition("Difficulty can only be changed during a quick quiz.")
        if self._state.is_generating:
            return self._busy()
        try:
            self._ensure_documents()
        except StaleSessionError as exc:
            return self._fail_stale(exc)

        state = self._state
        epoch = state.epoch
        self._commit(epoch, is_generating=True, notice=None)
        try:
            questions = await self._generate(
                self._batch_size, [difficulty], state.config.question_type, avoid=self._recent_prompts()
            )
        except GenerationError as exc:
            # The quiz keeps going with the questions it already has
            self._commit(epoch, is_generating=False, notice=Notice(kind="generation", message=exc.message))
            return self.snapshot()
        config = SessionConfig(
            question_count=self._batch_size,
            difficulties=[difficulty],
            question_type=state.config.question_type,
            time_limit_minutes=state.config.time_limit_minutes,
        )
        self._commit(
            epoch,
            config=config,
            difficulty=difficulty,
            questions=questions,
            current_question_index=0,
            is_generating=False,
            notice=None,
        )
        return self.snapshot()

    async def finish(self) -> SessionSnapshot:
        self._require(Stage.QUIZ, "finish")
        if self._state.is_generating:
            return self._busy()
        return await self._end_session(self._state.epoch)

    async def request_report(self) -> SessionSnapshot:
        self._require(Stage.SUMMARY, "request a report")
        if self._state.mode != Mode.EXAM:
            raise InvalidTransition("Performance reports are only written for exams.")
        if self._state.is_generating:
            return self._busy()
        await self._generate_report(self._state.epoch)
        return self.snapshot()

    def reset(self) -> SessionSnapshot:
        self._discard(stage=Stage.CHOOSING_MODE)
        return self.snapshot()
