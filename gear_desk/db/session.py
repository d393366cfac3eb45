import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _flag_env(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


GEAR_DESK_DB_URL = _require_env("GEAR_DESK_DB_URL")
GEAR_DESK_DB_ECHO = _flag_env("GEAR_DESK_DB_ECHO")


def build_engine(db_url: str, echo: bool = False):
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Sessions are handed across FastAPI's threadpool.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(
        db_url,
        pool_pre_ping=True,
        echo=echo,
        future=True,
        connect_args=connect_args,
    )


def build_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


engine_gear = build_engine(GEAR_DESK_DB_URL, echo=GEAR_DESK_DB_ECHO)

SessionLocalGear = build_sessionmaker(engine_gear)
