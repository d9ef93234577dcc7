import os
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

DB_URL = os.getenv("DB_URL", "sqlite:///./data/alerts.db")


def make_engine(url: str = DB_URL) -> Engine:
    """Create engine; for SQLite files make sure the parent directory exists."""
    if url.startswith("sqlite:///") and ":memory:" not in url:
        db_path = url[len("sqlite:///"):]
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    db_engine = create_engine(url, echo=False, future=True, connect_args=connect_args)

    if url.startswith("sqlite"):
        # SQLite ignores ON DELETE CASCADE unless enabled per connection
        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


def make_session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(DB_URL)
SessionLocal = make_session_factory(engine)


def init_db(db_engine: Engine = engine) -> None:
    """Create all tables (no migrations)."""
    from src.storage.models import Base
    Base.metadata.create_all(db_engine)
