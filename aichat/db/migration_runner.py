from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy.engine import make_url

from aichat.logging_config import logger
from aichat.settings import settings

# aichat/db/migration_runner.py -> 项目根目录（alembic.ini 与 alembic/ 所在目录）
PROJECT_DIR = Path(__file__).resolve().parents[2]

_lock = threading.Lock()
_applied = False


def _should_auto_apply() -> bool:
    """只对 Postgres 自动迁移；测试用的 SQLite 由 metadata.create_all 建表。"""
    if not settings.auto_apply_db_migrations:
        return False
    backend = make_url(settings.database_url).get_backend_name()
    return backend in ("postgresql", "postgres")


def _build_alembic_config(base_dir: Path) -> Config:
    # 全部使用绝对路径，避免工作目录不同导致找不到 revision
    cfg = Config(str(base_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(base_dir / "alembic"))
    cfg.set_main_option("version_locations", str(base_dir / "alembic" / "versions"))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    return cfg


def auto_upgrade_database(base_dir: Path = PROJECT_DIR) -> bool:
    """
    进程启动时执行 `alembic upgrade head`，每个进程最多一次。

    返回本次调用是否实际执行了迁移。缺少 alembic.ini 时只告警不报错；
    迁移本身失败会向上抛出，阻止服务在 schema 不一致的情况下启动。
    """
    global _applied
    if _applied or not _should_auto_apply():
        return False

    with _lock:
        if _applied:
            return False

        ini_path = base_dir / "alembic.ini"
        if not ini_path.exists():
            logger.warning("未找到 %s，跳过自动迁移", ini_path)
            _applied = True
            return False

        logger.info("开始执行数据库迁移: alembic upgrade head")
        try:
            command.upgrade(_build_alembic_config(base_dir), "head")
        except Exception:
            logger.exception("数据库迁移失败，请检查后手动执行 'alembic upgrade head'")
            raise
        _applied = True
        logger.info("数据库迁移完成")
        return True
