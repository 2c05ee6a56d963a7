import os

# Must be set before backend.config is imported
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from backend.db import Base, engine, SessionLocal
import backend.models  # noqa: F401  registers tables


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
