from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from aichat.settings import settings


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # 会话生成的数据库写入在工作线程中执行，SQLite 需要跨线程共享连接
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )
    # 调优连接池：开启 pre_ping，并定期 recycle，降低连接失活导致的阻塞
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        future=True,
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def get_db_session() -> Generator[Session, None, None]:
    """Provide a SQLAlchemy session for FastAPI dependencies."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    Transactional scope: commit when the block succeeds, roll back every
    write of the block when it raises.
    """
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = ["SessionLocal", "build_engine", "engine", "get_db_session", "session_scope"]
