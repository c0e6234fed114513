import json
import logging
import os
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
CONFIG_PATH = os.getenv("KDS_CONFIG_PATH", "config.json")
ODBC_DRIVER = os.getenv("KDS_ODBC_DRIVER", "ODBC Driver 17 for SQL Server")

# Required keys of a connection descriptor
CONNECTION_FIELDS = ("server", "database", "user", "password")


class Base(DeclarativeBase):
    pass


def load_connection_config(path: str = None) -> dict:
    """Load the persisted connection descriptor (server, database, user, password)."""
    path = path or CONFIG_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except FileNotFoundError:
        logger.warning(f"DB config file {path} not found")
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable DB config {path}: {e}")
        return {}

    if not isinstance(config, dict):
        logger.warning(f"Ignoring DB config {path}: expected an object")
        return {}
    logger.info(f"Loaded DB config from {path}")
    return config


def save_connection_config(config: dict, path: str = None) -> dict:
    """Merge a connection descriptor into the config file and return the merged result."""
    path = path or CONFIG_PATH
    merged = {**load_connection_config(path), **config}
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(merged, f, indent=2)
    os.replace(tmp_path, path)
    logger.info(f"Updated {path} with new DB credentials")
    return merged


def build_database_url(config: dict) -> str | URL:
    """Build an SQLAlchemy URL for SQL Server from a connection descriptor."""
    if config.get("url"):
        return config["url"]

    server = config.get("server", "")
    port = config.get("port")
    # Named instances like 'HOST\\SQLEXPRESS' ignore the port
    if port and "\\" not in server:
        server = f"{server},{port}"

    return URL.create(
        "mssql+aioodbc",
        username=config.get("user"),
        password=config.get("password"),
        host=server,
        database=config.get("database"),
        query={
            "driver": config.get("driver", ODBC_DRIVER),
            "TrustServerCertificate": "yes",
        },
    )


def _create_engine(url) -> AsyncEngine:
    kwargs = {"echo": False, "pool_pre_ping": True}
    if not str(url).startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20)
    return create_async_engine(url, **kwargs)


def _initial_url():
    if DATABASE_URL:
        return DATABASE_URL
    config = load_connection_config()
    if config and all(config.get(k) for k in CONNECTION_FIELDS):
        return build_database_url(config)
    # Nothing configured yet - an in-memory database keeps the API up until /reconnect
    logger.warning("No database configured, using in-memory SQLite until reconnect")
    return "sqlite+aiosqlite://"


engine: AsyncEngine = _create_engine(_initial_url())

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_engine() -> AsyncEngine:
    return engine


async def check_connection(target: Optional[AsyncEngine] = None) -> bool:
    """Verify the pool can still reach the database."""
    target = target or engine
    try:
        async with target.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection verification failed: {e}")
        return False


async def connect_database(config: Optional[dict] = None, url=None) -> AsyncEngine:
    """
    Replace the connection pool.

    The new pool is verified with SELECT 1 before the old one is disposed,
    so a failed reconnect leaves the previous pool in place.
    """
    global engine, AsyncSessionLocal

    if url is None:
        url = build_database_url(config or load_connection_config())

    new_engine = _create_engine(url)
    try:
        async with new_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        await new_engine.dispose()
        raise

    old_engine = engine
    engine = new_engine
    AsyncSessionLocal.configure(bind=new_engine)
    await old_engine.dispose()
    logger.info("Connected to database")
    return new_engine
