from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import NullPool, StaticPool

from tbindexer.sources.timeboost_pipeline.config.settings import DATABASE_URL
from tbindexer.storage.models.timeboost import Base


def _engine_kwargs(url: str, worker: bool = False) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    if worker:
        return {"pool_pre_ping": True, "poolclass": NullPool}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


def make_engine(url: str = DATABASE_URL, worker: bool = False):
    return create_engine(url, **_engine_kwargs(url, worker))


def make_session_factory(engine):
    return scoped_session(
        sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine,
        )
    )


# Celery workers fork; pooled connections must not cross the fork
worker_engine = make_engine(DATABASE_URL, worker=True)
WorkerSessionLocal = make_session_factory(worker_engine)

engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind=None) -> None:
    """Create the indexer tables if they do not exist yet."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
