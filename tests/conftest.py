import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from checkin.db import Base, get_db, make_engine
from checkin.main import app as api_app, get_redis
from checkin.station.local_queue import LocalQueue


@pytest.fixture(scope="function")
def engine(tmp_path):
    # a real file so threads get real locking
    eng = make_engine(f"sqlite:///{tmp_path / 'server.db'}")
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()

@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture(scope="function")
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()

@pytest.fixture(scope="function")
def app(session_factory):
    def override_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    api_app.dependency_overrides[get_db] = override_db
    api_app.dependency_overrides[get_redis] = lambda: None
    try:
        yield api_app
    finally:
        api_app.dependency_overrides.clear()

@pytest_asyncio.fixture(scope="function")
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
        yield c

@pytest.fixture(scope="function")
def local_queue(tmp_path):
    q = LocalQueue(f"sqlite:///{tmp_path / 'station.db'}")
    try:
        yield q
    finally:
        q.engine.dispose()
