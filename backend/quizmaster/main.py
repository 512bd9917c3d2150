import asyncio
import logging

from fastapi import FastAPI

from .cleanup import purge_stale_sessions
from .db import Base, engine, get_db
from .log import setup_logging
from .routers import session
from .settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(title="Quiz Master API")
app.include_router(session.router)

_cleanup_task = None


@app.get("/info")
def root():
	return {"status": "ok", "gemini_configured": bool(settings.gemini_api_key)}


def _purge_once() -> None:
	db = next(get_db())
	try:
		purge_stale_sessions(db)
	finally:
		db.close()
	session.evict_idle_sessions(settings.session_retention_days * 24 * 60 * 60)


async def _cleanup_watcher():
	# Startup already purged once; then daily
	while True:
		await asyncio.sleep(24 * 60 * 60)
		try:
			_purge_once()
		except Exception:
			logger.warning("Periodic session purge failed", exc_info=True)


@app.on_event("startup")
async def startup_event():
	global _cleanup_task
	setup_logging(settings.log_level, json_format=settings.log_json)
	Base.metadata.create_all(bind=engine)
	try:
		_purge_once()
	except Exception:
		logger.warning("Startup session purge failed", exc_info=True)
	_cleanup_task = asyncio.create_task(_cleanup_watcher())


@app.on_event("shutdown")
async def shutdown_event():
	session.close_all_sessions()
	if _cleanup_task is not None:
		_cleanup_task.cancel()
