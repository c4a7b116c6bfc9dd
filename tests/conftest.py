import pytest
from sqlalchemy.orm import sessionmaker

from stickerchart import services
from stickerchart.config import Settings
from stickerchart.database import make_engine


@pytest.fixture
def db(monkeypatch):
    # Each test gets its own in-memory database
    engine = make_engine("sqlite://")
    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    monkeypatch.setattr(services, "SessionLocal", TestingSession)
    services.initialize()
    yield TestingSession
    engine.dispose()


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        documents_root=tmp_path / "documents",
        cache_root=tmp_path / "cache",
    )


@pytest.fixture
def alice(db):
    return services.create_user("Alice", services.USER_ROLE_ID, "1234")
