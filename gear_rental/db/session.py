import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from db.base import Base


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


GEAR_RENTAL_DB_URL = _require_env("GEAR_RENTAL_DB_URL")

_connect_args = {"check_same_thread": False} if GEAR_RENTAL_DB_URL.startswith("sqlite") else {}

engine_datastore = create_engine(
    GEAR_RENTAL_DB_URL,
    pool_pre_ping=True,
    connect_args=_connect_args,
    future=True,
)

SessionLocalDatastore = sessionmaker(
    bind=engine_datastore,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_datastore(engine: Engine | None = None) -> None:
    # Registers the Entities table on Base.metadata before create_all.
    import models.datastore_models  # noqa: F401

    Base.metadata.create_all(engine or engine_datastore)
