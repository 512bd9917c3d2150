from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./quizmaster.db"


def make_engine(url: str):
	if url.startswith("sqlite"):
		kwargs = {"connect_args": {"check_same_thread": False}}
		# In-memory SQLite is per connection; share one so every session sees the same tables
		if url in ("sqlite://", "sqlite:///:memory:"):
			kwargs["poolclass"] = StaticPool
		return create_engine(url, future=True, **kwargs)
	return create_engine(url, future=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()
