import datetime
import logging
from pathlib import Path

from aichat.logging_config import (
    DailyFolderBusinessFileHandler,
    DailyFolderFileHandler,
    RequestIdFilter,
    infer_log_business,
    request_id_var,
)


def _fixed_now() -> datetime.datetime:
    return datetime.datetime(2025, 1, 2, 3, 4, 5, tzinfo=datetime.UTC)


def _make_record(*, name: str, pathname: str, msg: str) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.INFO,
        pathname=pathname,
        lineno=123,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_daily_folder_business_handler_routes_by_pathname(tmp_path: Path) -> None:
    handler = DailyFolderBusinessFileHandler(
        log_dir=tmp_path,
        backup_days=7,
        timezone_name="UTC",
        now_fn=_fixed_now,
    )
    handler.setFormatter(logging.Formatter("[%(biz)s] %(message)s"))

    handler.emit(
        _make_record(
            name="aichat",
            pathname="/srv/aichat/services/chat_orchestrator.py",
            msg="chat hello",
        )
    )
    handler.emit(
        _make_record(
            name="aichat",
            pathname="/srv/aichat/provider/gemini.py",
            msg="genkit hello",
        )
    )

    day_dir = tmp_path / "2025-01-02"
    assert (day_dir / "chat.log").read_text(encoding="utf-8").splitlines()[-1] == (
        "[chat] chat hello"
    )
    assert (day_dir / "genkit.log").read_text(encoding="utf-8").splitlines()[-1] == (
        "[genkit] genkit hello"
    )
    handler.close()


def test_daily_folder_file_handler_writes_to_named_file(tmp_path: Path) -> None:
    handler = DailyFolderFileHandler(
        log_dir=tmp_path,
        filename="access.log",
        backup_days=7,
        timezone_name="UTC",
        now_fn=_fixed_now,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.emit(_make_record(name="uvicorn.access", pathname="x.py", msg="GET /health 200"))
    handler.close()

    assert (tmp_path / "2025-01-02" / "access.log").read_text(encoding="utf-8") == (
        "GET /health 200\n"
    )


def test_old_date_folders_are_pruned(tmp_path: Path) -> None:
    for day in ("2024-12-28", "2024-12-29", "2024-12-30", "not-a-date"):
        (tmp_path / day).mkdir()

    handler = DailyFolderFileHandler(
        log_dir=tmp_path,
        filename="app.log",
        backup_days=2,
        timezone_name="UTC",
        now_fn=_fixed_now,
    )
    handler.close()

    remaining = sorted(p.name for p in tmp_path.iterdir())
    assert remaining == ["2024-12-30", "2025-01-02", "not-a-date"]


def test_infer_log_business_buckets() -> None:
    cases = {
        ("aichat", "/srv/aichat/api/v1/chat_routes.py"): "chat",
        ("aichat", "/srv/aichat/services/session_registry.py"): "chat",
        ("aichat", "/srv/aichat/api/v1/session_routes.py"): "session",
        ("aichat", "/srv/aichat/repositories/message_repository.py"): "db",
        ("aichat", "/srv/aichat/middleware/recovery.py"): "http",
        ("aichat", "/srv/main.py"): "app",
        ("uvicorn.access", "h11_impl.py"): "access",
        ("uvicorn.error", "server.py"): "server",
    }
    for (name, pathname), expected in cases.items():
        record = _make_record(name=name, pathname=pathname, msg="x")
        assert infer_log_business(record) == expected


def test_request_id_filter_uses_context_var() -> None:
    token = request_id_var.set("req-123")
    try:
        record = _make_record(name="aichat", pathname="x.py", msg="x")
        assert RequestIdFilter().filter(record)
        assert record.request_id == "req-123"
    finally:
        request_id_var.reset(token)
