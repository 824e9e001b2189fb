from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from aichat.logging_config import logger

from .cancellation import CancellationToken


@dataclass(slots=True, eq=False)
class CancellationHandle:
    session_id: str
    token: CancellationToken
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    # monotonic seconds, used for idle computations
    last_access: float = field(default_factory=time.monotonic)

    def age_seconds(self) -> float:
        return (datetime.now(UTC) - self.created_at).total_seconds()


class SessionRegistry:
    """
    Process-local map session id -> cancellation handle of the in-flight
    generation, plus a background reaper that drops idle or already-cancelled
    handles.

    All map mutations happen under one lock. Cancelling an unknown session is
    not an error.
    """

    def __init__(
        self,
        *,
        idle_timeout: float = 1800.0,
        cleanup_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._idle_timeout = idle_timeout
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._handles: dict[str, CancellationHandle] = {}
        self._stop_event: asyncio.Event | None = None
        self._reaper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._handles

    def create(
        self,
        parent: CancellationToken | None = None,
        session_id: str | None = None,
    ) -> tuple[str, CancellationToken, Callable[[], None]]:
        """
        Register a cancellation handle and return ``(session_id, token, revoke)``.

        ``revoke`` cancels the token and removes the entry; it only removes the
        entry it created, so a newer turn on the same session keeps its handle.
        """
        sid = session_id or str(uuid.uuid4())
        token = parent.child() if parent is not None else CancellationToken()
        handle = CancellationHandle(session_id=sid, token=token, last_access=self._clock())

        with self._lock:
            previous = self._handles.get(sid)
            self._handles[sid] = handle
        if previous is not None:
            logger.info("会话 %s 已有进行中的生成，新的取消句柄将覆盖旧句柄", sid)

        def revoke() -> None:
            token.cancel("revoked")
            with self._lock:
                if self._handles.get(sid) is handle:
                    del self._handles[sid]

        logger.debug("创建会话取消句柄: session_id=%s", sid)
        return sid, token, revoke

    def get(self, session_id: str) -> CancellationToken | None:
        with self._lock:
            handle = self._handles.get(session_id)
            if handle is None:
                return None
            handle.last_access = self._clock()
            return handle.token

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        handle.token.cancel("aborted")
        logger.info(
            "会话已取消: session_id=%s handle_age=%.1fs",
            session_id,
            handle.age_seconds(),
        )
        return True

    def remove(self, session_id: str) -> None:
        with self._lock:
            handle = self._handles.pop(session_id, None)
        if handle is not None:
            handle.token.cancel("removed")
            logger.debug(
                "移除会话取消句柄: session_id=%s created_at=%s",
                session_id,
                handle.created_at.isoformat(),
            )

    def cleanup_expired(self) -> int:
        """One reaper pass; returns the number of handles removed."""
        now = self._clock()
        with self._lock:
            expired = [
                sid
                for sid, handle in self._handles.items()
                if handle.token.cancelled or now - handle.last_access > self._idle_timeout
            ]
            handles = [self._handles.pop(sid) for sid in expired]

        for handle in handles:
            handle.token.cancel("expired")
        if handles:
            logger.info("清理过期会话 %d 个", len(handles))
        return len(handles)

    def start(self) -> None:
        """Spawn the reaper on the running event loop."""
        if self._reaper is not None and not self._reaper.done():
            return
        self._stop_event = asyncio.Event()
        self._reaper = asyncio.create_task(self._reap_loop(self._stop_event))
        logger.info(
            "会话清理任务已启动: idle_timeout=%ss cleanup_interval=%ss",
            self._idle_timeout,
            self._cleanup_interval,
        )

    async def stop(self) -> None:
        """Stop the reaper, then cancel and remove every remaining handle."""
        if self._reaper is not None and self._stop_event is not None:
            self._stop_event.set()
            await self._reaper
        self._reaper = None
        self._stop_event = None

        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.token.cancel("shutdown")
        logger.info("会话注册表已停止，取消 %d 个进行中的会话", len(handles))

    async def _reap_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._cleanup_interval)
            except TimeoutError:
                self.cleanup_expired()


__all__ = ["CancellationHandle", "SessionRegistry"]
