from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import QuizSessionRecord
from .schemas import SessionState
from .settings import settings


logger = logging.getLogger(__name__)

# Runtime-only fields. Document payloads in particular are too large to keep
# and are treated as lost after a restart.
_NOT_PERSISTED = {"documents", "is_generating", "notice"}


class SessionStore:
    """Key-value store for the non-binary part of a session.

    Writes are best effort: a failing database is logged and the session
    carries on in memory.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, *, key_prefix: Optional[str] = None) -> None:
        self._session_factory = session_factory
        self._key_prefix = key_prefix or settings.session_key

    def key_for(self, session_id: str) -> str:
        return f"{self._key_prefix}:{session_id}"

    def save(self, state: SessionState) -> None:
        payload = state.model_dump(mode="json", exclude=_NOT_PERSISTED)
        key = self.key_for(state.session_id)
        try:
            with self._session_factory() as db:
                row = db.get(QuizSessionRecord, key)
                if row is None:
                    row = QuizSessionRecord(session_key=key)
                    db.add(row)
                row.stage = state.stage.value
                row.mode = state.mode.value if state.mode else None
                row.payload = json.dumps(payload)
                db.commit()
        except SQLAlchemyError:
            logger.warning("Could not persist session %s", state.session_id, exc_info=True)

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            with self._session_factory() as db:
                row = db.get(QuizSessionRecord, self.key_for(session_id))
                if row is None:
                    return None
                return json.loads(row.payload)
        except SQLAlchemyError:
            logger.warning("Could not load session %s", session_id, exc_info=True)
            return None

    def delete(self, session_id: str) -> None:
        try:
            with self._session_factory() as db:
                row = db.get(QuizSessionRecord, self.key_for(session_id))
                if row is not None:
                    db.delete(row)
                    db.commit()
        except SQLAlchemyError:
            logger.warning("Could not delete session %s", session_id, exc_info=True)
