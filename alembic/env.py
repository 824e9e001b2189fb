from __future__ import annotations

from alembic import context
from sqlalchemy import engine_from_config, pool

from aichat.models import Base
from aichat.settings import settings

config = context.config
target_metadata = Base.metadata

# 未显式指定 sqlalchemy.url 时（alembic CLI 直接运行）使用 DATABASE_URL；
# migration_runner 会提前写入同一个地址。
if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", settings.database_url)


def _migrate_with_url(url: str) -> None:
    # --sql 模式：只输出 SQL，不连接数据库
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate_with_engine() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    _migrate_with_url(config.get_main_option("sqlalchemy.url"))
else:
    _migrate_with_engine()
