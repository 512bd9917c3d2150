from __future__ import annotations
import logging
from datetime import datetime, timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import QuizSessionRecord
from .settings import settings

logger = logging.getLogger(__name__)


def purge_stale_sessions(db: Session, *, days: int | None = None) -> int:
	threshold = datetime.utcnow() - timedelta(days=settings.session_retention_days if days is None else days)
	res = db.execute(delete(QuizSessionRecord).where(QuizSessionRecord.updated_at < threshold))
	db.commit()
	removed = res.rowcount or 0
	if removed:
		logger.info("Purged %d stored sessions idle since %s", removed, threshold.isoformat())
	return removed
