from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from cart_recovery.config import settings
from cart_recovery.models import Base


def _engine_connect_args() -> dict:
    if settings.CART_RECOVERY_DB_URL.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine: Engine = create_engine(
    settings.CART_RECOVERY_DB_URL,
    future=True,
    connect_args=_engine_connect_args(),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)
