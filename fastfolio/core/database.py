from fastapi import Request
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine


def _normalized_database_url(raw_url: str) -> str:
    """
    DATABASE_URL normalisation:
    - postgres:// or postgresql:// without a driver -> psycopg3 dialect.
    - Everything else (SQLite etc.) is returned unchanged.
    """
    if not raw_url:
        return "sqlite:///./fastfolio.db"
    raw_url = raw_url.strip()
    if raw_url.startswith("postgres://"):
        return "postgresql+psycopg://" + raw_url[len("postgres://") :]
    if raw_url.startswith("postgresql://") and "+psycopg" not in raw_url.split("://", 1)[0]:
        return "postgresql+psycopg://" + raw_url[len("postgresql://") :]
    return raw_url


def create_db_engine(database_url: str) -> Engine:
    url = _normalized_database_url(database_url)
    connect_args = {}
    if url.startswith("sqlite"):
        # Concurrent settlements wait on the SQLite write lock instead of failing fast
        connect_args = {"check_same_thread": False, "timeout": 30}
    # In-memory SQLite: one shared connection so init_db tables are visible to every request
    use_static_pool = url.startswith("sqlite") and ":memory:" in url
    return create_engine(
        url,
        connect_args=connect_args,
        poolclass=StaticPool if use_static_pool else None,
    )


def init_db(engine: Engine) -> None:
    # Register table classes on SQLModel.metadata before create_all
    from fastfolio import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def ping_db(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def get_db(request: Request):
    with Session(request.app.state.engine) as session:
        yield session
