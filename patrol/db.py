from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from patrol.settings import get_settings


T = TypeVar("T")


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_session(session_factory: sessionmaker, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    with session_factory() as db:
        try:
            result = fn(db, *args, **kwargs)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return result
