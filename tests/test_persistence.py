import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from fakes import make_document, reach_quiz, wait_until
from quizmaster.cleanup import purge_stale_sessions
from quizmaster.models import QuizSessionRecord
from quizmaster.orchestrator import SessionOrchestrator
from quizmaster.persistence import SessionStore
from quizmaster.schemas import Mode, SessionConfig, Stage


class TestSessionStore:

    @pytest.mark.asyncio
    async def test_documents_are_never_stored(self, make_orchestrator, store, session_factory):
        orchestrator = make_orchestrator(store=store)
        await reach_quiz(orchestrator, "exam", question_count=2)

        with session_factory() as db:
            row = db.get(QuizSessionRecord, store.key_for(orchestrator.session_id))
            assert row.stage == "quiz"
            assert row.mode == "exam"
            payload = json.loads(row.payload)

        assert "documents" not in payload
        assert "JVBERi0xLjQK" not in row.payload
        assert payload["document_names"] == ["notes.pdf"]
        assert len(payload["questions"]) == 2

    @pytest.mark.asyncio
    async def test_every_transition_is_saved(self, make_orchestrator, store):
        orchestrator = make_orchestrator(store=store)
        orchestrator.select_mode(Mode.QUIZ)
        assert store.load(orchestrator.session_id)["stage"] == "uploading"

        orchestrator.reset()
        assert store.load(orchestrator.session_id)["stage"] == "choosing_mode"

    def test_missing_session(self, store):
        assert store.load("nope") is None

    @pytest.mark.asyncio
    async def test_delete(self, make_orchestrator, store):
        orchestrator = make_orchestrator(store=store)
        orchestrator.select_mode(Mode.EXAM)

        store.delete(orchestrator.session_id)

        assert store.load(orchestrator.session_id) is None

    @pytest.mark.asyncio
    async def test_prefix_keeps_stores_apart(self, make_orchestrator, store, session_factory):
        other = SessionStore(session_factory, key_prefix="other.app")
        orchestrator = make_orchestrator(store=store)
        orchestrator.select_mode(Mode.EXAM)

        assert other.load(orchestrator.session_id) is None


class TestRestore:

    @pytest.mark.asyncio
    async def test_restored_quiz_keeps_progress(self, make_orchestrator, fake_source, store):
        orchestrator = make_orchestrator(store=store)
        await reach_quiz(orchestrator, "exam", question_count=3)
        orchestrator.submit_answer([0])
        await orchestrator.advance()
        orchestrator.close()

        restored = SessionOrchestrator.restore(fake_source, store, orchestrator.session_id, tick_interval=60.0)
        try:
            state = restored.state
            assert state.stage == Stage.QUIZ
            assert state.current_question_index == 1
            assert len(state.history) == 1
            assert state.score.total == 1
            assert state.documents == []
            assert state.document_names == ["notes.pdf"]
            assert state.remaining_seconds == 20 * 60
            assert restored._timer is not None and restored._timer.running
        finally:
            restored.close()

    @pytest.mark.asyncio
    async def test_restored_exam_with_no_time_left_ends(self, make_orchestrator, fake_source, store):
        orchestrator = make_orchestrator(store=store)
        await reach_quiz(orchestrator, "exam", question_count=3)
        orchestrator.submit_answer([0])
        orchestrator._commit(orchestrator.state.epoch, remaining_seconds=0)
        orchestrator.close()

        restored = SessionOrchestrator.restore(fake_source, store, orchestrator.session_id)
        try:
            assert restored.state.stage in (Stage.SUMMARY, Stage.REPORT)
            await restored.drain()
            assert restored.state.stage == Stage.REPORT
        finally:
            restored.close()

    @pytest.mark.asyncio
    async def test_restart_before_start_asks_for_upload(self, make_orchestrator, fake_source, store):
        orchestrator = make_orchestrator(store=store)
        orchestrator.select_mode(Mode.EXAM)
        orchestrator.upload([make_document()])

        restored = SessionOrchestrator.restore(fake_source, store, orchestrator.session_id)
        snapshot = await restored.start(SessionConfig(question_count=2))

        assert snapshot.stage == Stage.UPLOADING
        assert snapshot.notice.kind == "stale_session"
        assert snapshot.mode == Mode.EXAM
        assert fake_source.generate_calls == []
        # The user can carry on from the upload screen
        assert restored.upload([make_document()]).stage == Stage.CONFIGURING

    @pytest.mark.asyncio
    async def test_restored_quick_quiz_cannot_refill(self, make_orchestrator, fake_source, store):
        orchestrator = make_orchestrator(store=store, batch_size=1)
        await reach_quiz(orchestrator, "quiz")
        orchestrator.submit_answer([0])

        restored = SessionOrchestrator.restore(fake_source, store, orchestrator.session_id, batch_size=1)
        snapshot = await restored.advance()

        assert snapshot.stage == Stage.UPLOADING
        assert snapshot.notice.kind == "stale_session"
        assert snapshot.history == []
        assert snapshot.score.total == 0
        assert len(fake_source.generate_calls) == 1

    def test_unknown_session(self, fake_source, store):
        assert SessionOrchestrator.restore(fake_source, store, "missing") is None

    @pytest.mark.asyncio
    async def test_closed_session_is_not_written_back(self, make_orchestrator, fake_source, store):
        fake_source.gate = asyncio.Event()
        orchestrator = make_orchestrator(store=store, tick_interval=0.005)
        orchestrator.select_mode(Mode.EXAM)
        orchestrator.upload([make_document()])

        pending = asyncio.create_task(orchestrator.start(SessionConfig(question_count=2, time_limit_minutes=1)))
        await wait_until(lambda: orchestrator.state.is_generating)
        orchestrator.close()
        store.delete(orchestrator.session_id)
        fake_source.gate.set()
        snapshot = await pending

        assert snapshot.stage == Stage.CONFIGURING
        assert snapshot.questions == []
        assert orchestrator._timer is None
        await asyncio.sleep(0.1)
        assert store.load(orchestrator.session_id) is None

    @pytest.mark.asyncio
    async def test_countdown_progress_is_persisted(self, make_orchestrator, store):
        orchestrator = make_orchestrator(store=store, tick_interval=0.005)
        await reach_quiz(orchestrator, "exam", question_count=1, time_limit_minutes=1)

        await wait_until(lambda: store.load(orchestrator.session_id)["remaining_seconds"] <= 50)
        orchestrator.close()


class TestPurge:

    def test_removes_only_stale_sessions(self, session_factory):
        now = datetime.utcnow()
        with session_factory() as db:
            db.add(QuizSessionRecord(session_key="k:old", stage="quiz", payload="{}", updated_at=now - timedelta(days=8)))
            db.add(QuizSessionRecord(session_key="k:new", stage="quiz", payload="{}", updated_at=now - timedelta(days=1)))
            db.commit()

            removed = purge_stale_sessions(db, days=7)

            assert removed == 1
            keys = db.execute(select(QuizSessionRecord.session_key)).scalars().all()
            assert keys == ["k:new"]

    def test_nothing_to_purge(self, session_factory):
        with session_factory() as db:
            assert purge_stale_sessions(db) == 0
