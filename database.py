"""
Database engine and session handling.

One SQLAlchemy session per request through the ``get_db`` dependency. Writes
that span several tables go through ``transaction`` so that a mutation and its
audit row are committed together or not at all.
"""
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

import config


class Base(DeclarativeBase):
    pass


def make_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    eng = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_foreign_keys)
    return eng


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    # models must be imported so every table is registered on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def transaction(db: Session):
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def run_reads(bind: Engine, jobs: Dict[str, Callable[[Session], Any]]) -> Dict[str, Any]:
    """Run independent read-only queries concurrently and join their results.

    Each job gets its own short-lived session on ``bind`` and must return
    plain data, since its session is closed once the job returns. The first
    failing job's exception is raised.
    """
    if not jobs:
        return {}
    # a StaticPool engine shares one connection; its reads run one at a time
    workers = 1 if isinstance(bind.pool, StaticPool) else max(1, min(config.DB_READ_WORKERS, len(jobs)))

    def run(job):
        with Session(bind=bind, autoflush=False, expire_on_commit=False) as session:
            return job(session)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {key: pool.submit(run, job) for key, job in jobs.items()}
        return {key: future.result() for key, future in futures.items()}
