from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text
from .db import Base


class QuizSessionRecord(Base):
	__tablename__ = "quiz_sessions"
	# "<session key>:<session id>"
	session_key = Column(String(160), primary_key=True, index=True)
	stage = Column(String(32), nullable=False)
	mode = Column(String(16), nullable=True)
	payload = Column(Text, nullable=False)  # JSON snapshot, never includes document payloads
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False, index=True)
