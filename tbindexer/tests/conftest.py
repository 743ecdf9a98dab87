import os
import pathlib

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Automatically load .env from project root
load_dotenv(dotenv_path=pathlib.Path(__file__).parent.parent.parent / ".env")
# never touch a real database from tests
os.environ["DATABASE_URL"] = "sqlite://"

from tbindexer.storage.models.timeboost import Base  # noqa: E402
from tbindexer.tests.fakes import FakeChain, FakeClock, FakeTransport, scenario_timestamp  # noqa: E402


@pytest.fixture
def session_factory(tmp_path):
    # a file database gives every worker thread its own connection
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(start=10_000.0)


@pytest.fixture
def chain():
    return FakeChain.from_function(300, scenario_timestamp)


@pytest.fixture
def transport(chain):
    return FakeTransport(chain)
