from __future__ import annotations

import pytest

from riskgov.persistence.db import build_engine, build_sessionmaker
from riskgov.persistence.schema import create_schema


@pytest.fixture
async def db_engine(tmp_path):
    # One SQLite file per test so concurrent sessions share a real database.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'riskgov.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_sessionmaker(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session
