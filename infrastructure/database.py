"""
数据库引擎与会话工厂

生产使用 PostgreSQL(asyncpg)，测试使用 SQLite(aiosqlite)。
"""
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.engine import make_url

from core.config import settings
from infrastructure.models import Base


ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_url(database_url: str) -> str:
    """没有显式驱动的 URL 换成对应的异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}，请在 DATABASE__URL 中指定 async 驱动")
    return url.set(drivername=ASYNC_DRIVERS[url.drivername]).render_as_string(hide_password=False)


engine = create_async_engine(to_async_url(settings.database.url), echo=settings.database.echo)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables():
    """按模型建表（仅开发环境启动时调用）"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
