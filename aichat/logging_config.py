import datetime
import logging
import shutil
from contextvars import ContextVar
from pathlib import Path
from typing import Callable, TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

_LOGGING_CONFIGURED = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(biz)s] [%(request_id)s] %(name)s - %(message)s"

# Set by the request logging middleware; "-" outside of a request.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# (path fragment, business bucket); first match wins.
_BUSINESS_BY_PATH: tuple[tuple[str, str], ...] = (
    ("/aichat/api/v1/chat_routes.py", "chat"),
    ("/aichat/services/chat_orchestrator.py", "chat"),
    ("/aichat/services/session_registry.py", "chat"),
    ("/aichat/services/cancellation.py", "chat"),
    ("/aichat/api/v1/", "session"),
    ("/aichat/services/session_service.py", "session"),
    ("/aichat/services/message_service.py", "session"),
    ("/aichat/provider/", "genkit"),
    ("/aichat/db/", "db"),
    ("/aichat/repositories/", "db"),
    ("/aichat/middleware/", "http"),
    ("/aichat/routes.py", "http"),
)


def _resolve_tzinfo(timezone_name: str | None) -> datetime.tzinfo:
    if timezone_name:
        try:
            return ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError:
            pass
    # 未配置或无效时回退到系统本地时区
    return datetime.datetime.now().astimezone().tzinfo or datetime.UTC


class LocalTimezoneFormatter(logging.Formatter):
    """
    日志时间戳统一转换到 LOG_TIMEZONE（默认系统本地时区）。
    """

    def __init__(self, *args, timezone_name: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._tzinfo = _resolve_tzinfo(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")


def _resolve_log_dir(value: str | Path) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    # aichat/logging_config.py -> 项目根目录
    return Path(__file__).resolve().parents[1] / path


def infer_log_business(record: logging.LogRecord) -> str:
    """
    根据调用位置推断日志所属业务。

    业务模块都共用 "aichat" 这个 logger，record.name 区分不了来源，
    因此按 record.pathname 匹配；uvicorn 的日志按 logger 名称归类。
    """
    name = record.name or ""
    if name.startswith("uvicorn.access"):
        return "access"
    if name.startswith("uvicorn"):
        return "server"

    path = (record.pathname or "").replace("\\", "/")
    for fragment, business in _BUSINESS_BY_PATH:
        if fragment in path:
            return business
    return "app"


def _safe_file_stem(value: str) -> str:
    return "".join(c if (c.isalnum() or c in ("-", "_")) else "_" for c in value)


class _DailyFolderHandler(logging.Handler):
    """
    <log_dir>/<YYYY-MM-DD>/<name>.log，跨天时关闭旧文件并清理过期目录。

    子类通过 ``_file_name(record)`` 决定记录写入哪个文件。
    """

    def __init__(
        self,
        log_dir: Path,
        backup_days: int = 7,
        encoding: str = "utf-8",
        timezone_name: str | None = None,
        now_fn: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        super().__init__()
        self.log_dir = Path(log_dir)
        self.backup_days = backup_days
        self.encoding = encoding
        self.terminator = "\n"
        self._tzinfo = _resolve_tzinfo(timezone_name)
        # 测试时注入固定时间
        self._now_fn = now_fn
        self._current_date: datetime.date | None = None
        self._streams: dict[str, TextIO] = {}
        self._roll_if_needed()

    def _today(self) -> datetime.date:
        now = self._now_fn() if self._now_fn is not None else datetime.datetime.now(tz=self._tzinfo)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self._tzinfo)
        return now.date()

    def _roll_if_needed(self) -> None:
        today = self._today()
        if today == self._current_date:
            return
        self._current_date = today
        self._close_streams()
        (self.log_dir / today.isoformat()).mkdir(parents=True, exist_ok=True)
        _prune_date_folders(self.log_dir, self.backup_days)

    def _close_streams(self) -> None:
        streams, self._streams = self._streams, {}
        for stream in streams.values():
            try:
                stream.close()
            except OSError:
                pass

    def _stream(self, file_name: str) -> TextIO:
        stream = self._streams.get(file_name)
        if stream is None:
            assert self._current_date is not None
            path = self.log_dir / self._current_date.isoformat() / file_name
            path.parent.mkdir(parents=True, exist_ok=True)
            stream = open(path, "a", encoding=self.encoding)
            self._streams[file_name] = stream
        return stream

    def _file_name(self, record: logging.LogRecord) -> str:
        raise NotImplementedError

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._roll_if_needed()
            stream = self._stream(self._file_name(record))
            stream.write(self.format(record) + self.terminator)
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            self._close_streams()
        finally:
            super().close()


class DailyFolderFileHandler(_DailyFolderHandler):
    """所有记录写入同一个文件：<log_dir>/<YYYY-MM-DD>/<filename>。"""

    def __init__(self, log_dir: Path, filename: str, **kwargs) -> None:
        self.filename = filename
        super().__init__(log_dir, **kwargs)

    def _file_name(self, record: logging.LogRecord) -> str:
        return self.filename


class DailyFolderBusinessFileHandler(_DailyFolderHandler):
    """按业务拆分文件：<log_dir>/<YYYY-MM-DD>/<business>.log。"""

    def _file_name(self, record: logging.LogRecord) -> str:
        biz = infer_log_business(record)
        record.biz = biz
        return f"{_safe_file_stem(biz)}.log"


def _prune_date_folders(log_dir: Path, backup_days: int) -> None:
    """只保留最近 backup_days 个日期目录；名称不是日期的目录不动。"""
    if backup_days <= 0:
        return
    try:
        candidates = list(log_dir.iterdir())
    except OSError:
        return

    dated: list[tuple[datetime.date, Path]] = []
    for path in candidates:
        if not path.is_dir():
            continue
        try:
            dated.append((datetime.date.fromisoformat(path.name), path))
        except ValueError:
            continue

    dated.sort()
    for _, old_dir in dated[:-backup_days]:
        shutil.rmtree(old_dir, ignore_errors=True)


class EnsureBizFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "biz"):
            record.biz = infer_log_business(record)
        return True


class FixedBizFilter(logging.Filter):
    def __init__(self, biz: str) -> None:
        super().__init__()
        self._biz = biz

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.biz = self._biz
        return True


class RequestIdFilter(logging.Filter):
    """把当前请求的 X-Request-ID 写入每条日志。"""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def _uvicorn_file_handler(
    log_dir: Path,
    biz: str,
    formatter: logging.Formatter,
    *,
    exclude_prefix: str | None = None,
) -> logging.Handler:
    handler = DailyFolderFileHandler(
        log_dir,
        f"{biz}.log",
        backup_days=settings.log_backup_days,
        timezone_name=settings.log_timezone,
    )
    handler.setFormatter(formatter)
    handler.addFilter(FixedBizFilter(biz))
    handler.addFilter(RequestIdFilter())
    if exclude_prefix:
        handler.addFilter(lambda record: not (record.name or "").startswith(exclude_prefix))
    return handler


def setup_logging() -> None:
    """
    初始化日志：
    - 业务日志（logger "aichat"）写入 LOG_DIR/<日期>/<业务>.log，
      LOG_SPLIT_BY_BUSINESS=false 时统一写入 app.log；
    - uvicorn 的 access / server 日志分别写入 access.log / server.log；
    - root 上挂一个控制台 handler。
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_dir = _resolve_log_dir(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, settings.log_level, logging.INFO)
    formatter = LocalTimezoneFormatter(LOG_FORMAT, timezone_name=settings.log_timezone)

    handler_kwargs = {
        "backup_days": settings.log_backup_days,
        "timezone_name": settings.log_timezone,
    }
    if settings.log_split_by_business:
        app_handler: logging.Handler = DailyFolderBusinessFileHandler(log_dir, **handler_kwargs)
    else:
        app_handler = DailyFolderFileHandler(log_dir, "app.log", **handler_kwargs)
    app_handler.setFormatter(formatter)
    app_handler.addFilter(EnsureBizFilter())
    app_handler.addFilter(RequestIdFilter())
    app_handler.addFilter(lambda record: record.name.startswith("aichat"))

    app_logger = logging.getLogger("aichat")
    app_logger.setLevel(level)
    app_logger.propagate = True
    app_logger.addHandler(app_handler)

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.setLevel(level)
    access_logger.propagate = True
    access_logger.addHandler(_uvicorn_file_handler(log_dir, "access", formatter))

    server_logger = logging.getLogger("uvicorn")
    server_logger.setLevel(level)
    server_logger.propagate = True
    server_logger.addHandler(
        _uvicorn_file_handler(log_dir, "server", formatter, exclude_prefix="uvicorn.access")
    )
    logging.getLogger("uvicorn.error").setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console.addFilter(EnsureBizFilter())
        console.addFilter(RequestIdFilter())
        root_logger.addHandler(console)

    _LOGGING_CONFIGURED = True


logger = logging.getLogger("aichat")
