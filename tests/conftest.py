import pytest
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base, make_engine


@pytest.fixture()
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session
