import pytest
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401
from config import Settings
from database import Base, make_engine
from security import SecurityAnalyzer, WhitelistStore


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every file at a temporary directory."""
    return Settings(
        db_path=str(tmp_path / "portwatch.db"),
        whitelist_path=str(tmp_path / "whitelist.json"),
        slow_tick_warning=60.0,
        shutdown_deadline=5.0,
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def whitelist_store(settings):
    return WhitelistStore(settings.whitelist_path)


@pytest.fixture
def analyzer(whitelist_store):
    return SecurityAnalyzer(whitelist_store)
