from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from aichat.db.session import build_engine
from aichat.deps import get_db, get_session_factory
from aichat.models import Base
from aichat.provider.generation import (
    GenerateOptions,
    GenerateResult,
    GenerationCancelledError,
    GenerationError,
    TokenUsage,
)
from aichat.services.cancellation import CancellationToken, OperationCancelled

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def user_headers(user_id: str = USER_ID) -> dict[str, str]:
    return {"X-User-ID": user_id}


def build_test_session_factory(tmp_path: Path) -> tuple[sessionmaker[Session], Engine]:
    """
    File-backed SQLite so that concurrent turns use separate connections
    (an in-memory StaticPool would share one transaction between them).
    """
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'aichat-test.db'}")
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
    return session_factory, engine


def install_test_db(app, tmp_path: Path) -> tuple[sessionmaker[Session], Engine]:
    """
    Attach a throwaway SQLite database to the FastAPI app.
    """
    session_factory, engine = build_test_session_factory(tmp_path)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    return session_factory, engine


class FakeGenerationClient:
    """
    Scripted generation client.

    - ``reply``: text returned for every prompt;
    - ``delay``: seconds to "think", interruptible through the cancellation token;
    - ``error``: raised instead of replying.
    """

    def __init__(
        self,
        *,
        reply: str = "你好，我是测试助手。",
        model: str = "fake-model",
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.reply = reply
        self.model = model
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, GenerateOptions | None]] = []
        self.closed = False

    async def generate(
        self,
        prompt: str,
        options: GenerateOptions | None = None,
        *,
        cancellation: CancellationToken,
    ) -> GenerateResult:
        self.calls.append((prompt, options))
        try:
            if self.delay > 0:
                await cancellation.guard(asyncio.sleep(self.delay))
            elif cancellation.cancelled:
                raise OperationCancelled(cancellation.reason)
        except OperationCancelled as exc:
            raise GenerationCancelledError(str(exc)) from exc

        if self.error is not None:
            raise self.error

        model = options.model if options is not None and options.model else self.model
        prompt_tokens = len(prompt)
        completion_tokens = len(self.reply)
        return GenerateResult(
            text=self.reply,
            model=model,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    async def aclose(self) -> None:
        self.closed = True


async def wait_until(
    predicate: Callable[[], bool], *, timeout: float = 3.0, interval: float = 0.01
) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
