import os

# Keep test runs off the file log sinks
os.environ.setdefault("LOG_TO_FILE", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a throwaway SQLite file with all tables created."""
    from app.models.base import init_db

    engine = create_engine(
        f"sqlite:///{tmp_path / 'warehouse_sync_test.db'}",
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()
