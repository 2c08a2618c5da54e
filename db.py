# db.py
import logging
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

import models  # noqa: F401  registers the tables on SQLModel.metadata

logger = logging.getLogger(__name__)

# Process-wide engine: init_engine() at startup, dispose_engine() at shutdown.
_engine: Optional[Engine] = None


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
  cursor = dbapi_connection.cursor()
  cursor.execute("PRAGMA foreign_keys=ON")
  cursor.close()


def create_db_engine(url: str, echo: bool = False, **kwargs) -> Engine:
  if not url:
    raise RuntimeError("DATABASE_URL is not set in backend .env")
  if url.startswith("sqlite"):
    kwargs.setdefault("connect_args", {"check_same_thread": False})
  engine = create_engine(url, echo=echo, pool_pre_ping=True, **kwargs)
  if engine.dialect.name == "sqlite":
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
  return engine


def init_engine(url: str, echo: bool = False) -> Engine:
  global _engine
  if _engine is None:
    _engine = create_db_engine(url, echo=echo)
    logger.info("database engine ready: %s", _engine.url.render_as_string(hide_password=True))
  return _engine


def get_engine() -> Engine:
  if _engine is None:
    raise RuntimeError("database engine is not initialized; call init_engine() first")
  return _engine


def dispose_engine() -> None:
  global _engine
  if _engine is not None:
    _engine.dispose()
    logger.info("database engine disposed")
    _engine = None


def init_db(engine: Optional[Engine] = None) -> None:
  SQLModel.metadata.create_all(engine or get_engine())


def get_session():
  with Session(get_engine()) as session:
    yield session
