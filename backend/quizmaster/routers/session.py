from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from ..errors import IngestionError, InvalidTransition
from ..ingestion import ingest_files
from ..orchestrator import SessionOrchestrator
from ..persistence import SessionStore
from ..question_source import GeminiQuestionSource, QuestionBatchSource
from ..schemas import AnswerRequest, DifficultyRequest, ModeRequest, SessionConfig, SessionSnapshot


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/session", tags=["session"])


_sessions: Dict[str, SessionOrchestrator] = {}
_store = SessionStore()


def get_question_source() -> QuestionBatchSource:
    return GeminiQuestionSource()


def get_store() -> SessionStore:
    return _store


async def get_orchestrator(
    session_id: str,
    source: QuestionBatchSource = Depends(get_question_source),
    store: SessionStore = Depends(get_store),
) -> SessionOrchestrator:
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        # Not in memory (e.g. after a restart): try the persisted snapshot.
        # Restoring may resume a countdown, so this runs on the event loop
        orchestrator = SessionOrchestrator.restore(source, store, session_id)
        if orchestrator is None:
            raise HTTPException(status_code=404, detail="Session not found")
        _sessions[session_id] = orchestrator
    orchestrator.touch()
    return orchestrator


def evict_idle_sessions(max_idle_seconds: float) -> int:
    """Drop in-memory sessions nobody has used for a while.

    Their stored snapshots stay, so a later request can still restore them
    (without document payloads).
    """
    idle = [sid for sid, orch in _sessions.items() if orch.idle_seconds > max_idle_seconds]
    for sid in idle:
        _sessions.pop(sid).close()
    if idle:
        logger.info("Evicted %d idle sessions from memory", len(idle))
    return len(idle)


def close_all_sessions() -> None:
    for orchestrator in _sessions.values():
        orchestrator.close()
    _sessions.clear()


def _conflict(exc: InvalidTransition) -> HTTPException:
    return HTTPException(status_code=409, detail=exc.message)


@router.post("", response_model=SessionSnapshot, status_code=201)
async def create_session(
    source: QuestionBatchSource = Depends(get_question_source),
    store: SessionStore = Depends(get_store),
):
    orchestrator = SessionOrchestrator(source, store=store)
    _sessions[orchestrator.session_id] = orchestrator
    store.save(orchestrator.state)
    logger.info("Created session %s", orchestrator.session_id)
    return orchestrator.snapshot()


@router.get("/{session_id}", response_model=SessionSnapshot)
async def get_session(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.snapshot()


@router.post("/{session_id}/mode", response_model=SessionSnapshot)
async def select_mode(req: ModeRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.select_mode(req.mode)
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/upload", response_model=SessionSnapshot)
async def upload(
    files: List[UploadFile] = File(...),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    # Count and declared sizes are checked before any file is read
    try:
        rejected = orchestrator.precheck_upload(len(files), sum(f.size or 0 for f in files))
    except InvalidTransition as exc:
        raise _conflict(exc)
    if rejected is not None:
        return rejected
    raw = [(f.filename or "", f.content_type, await f.read()) for f in files]
    try:
        documents = ingest_files(raw)
    except IngestionError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    try:
        return orchestrator.upload(documents)
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/start", response_model=SessionSnapshot)
async def start(
    config: Optional[SessionConfig] = None,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.start(config or SessionConfig())
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/answer", response_model=SessionSnapshot)
async def submit_answer(req: AnswerRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.submit_answer(req.answer, question_id=req.question_id)
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/advance", response_model=SessionSnapshot)
async def advance(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.advance()
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/difficulty", response_model=SessionSnapshot)
async def change_difficulty(req: DifficultyRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.change_difficulty(req.difficulty)
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/finish", response_model=SessionSnapshot)
async def finish(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.finish()
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/report", response_model=SessionSnapshot)
async def request_report(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.request_report()
    except InvalidTransition as exc:
        raise _conflict(exc)


@router.post("/{session_id}/reset", response_model=SessionSnapshot)
async def reset(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.reset()


@router.delete("/{session_id}", status_code=204)
async def delete_session(session_id: str, store: SessionStore = Depends(get_store)):
    orchestrator = _sessions.pop(session_id, None)
    if orchestrator is not None:
        orchestrator.close()
    store.delete(session_id)
