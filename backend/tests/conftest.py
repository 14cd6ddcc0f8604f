"""
Pytest configuration and fixtures.

Provides common fixtures for testing including database sessions,
storage on a temporary directory, fake models and test clients.
"""

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

import retrainer.models  # noqa: F401
from retrainer.core.config import Settings
from retrainer.core.database import Base
from retrainer.main import create_app
from retrainer.services.asset_storage import ConsolidatedStorage
from retrainer.services.model_runtime import TrainingOutcome

from helpers import FakeClock, FakeModel, sample_weights


@pytest.fixture(scope="function")
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    return Settings(
        database_url="sqlite:///:memory:",
        storage_dir=tmp_path / "ml",
        debug=True,
        environment="development",
    )


@pytest.fixture(scope="function")
def test_db_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(test_db_engine) -> sessionmaker:
    """Session factory bound to the test engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine,
    )


@pytest.fixture(scope="function")
def test_db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    """Temporary storage root."""
    path = tmp_path / "ml"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def storage(storage_dir: Path) -> Generator[ConsolidatedStorage, None, None]:
    """ConsolidatedStorage on a temporary directory."""
    instance = ConsolidatedStorage(base_dir=storage_dir, save_interval_ms=60_000)
    yield instance
    instance.stop_periodic_save()


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel(config={"features": 12}, weights=sample_weights())


@pytest.fixture
def fake_train_fn():
    """Training function that returns a trained FakeModel."""
    calls: list[tuple[str, str, dict]] = []

    def train(subject: str, variant: str, config: dict) -> TrainingOutcome:
        calls.append((subject, variant, config))
        return TrainingOutcome(
            model=FakeModel(config={"features": 12}, weights=sample_weights()),
            metrics={"accuracy": 0.81, "loss": 0.42},
        )

    train.calls = calls
    return train


@pytest.fixture(scope="function")
def client(
    storage: ConsolidatedStorage,
    session_factory: sessionmaker,
    fake_train_fn,
) -> Generator[TestClient, None, None]:
    """Create a test client wired to temporary storage and an in-memory database."""
    app = create_app(
        train_fn=fake_train_fn,
        subject_provider=lambda: ["BTCUSDT", "ETHUSDT"],
        storage=storage,
        db_session_factory=session_factory,
        init_database=False,
    )

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def client_without_trainer(
    storage: ConsolidatedStorage,
    session_factory: sessionmaker,
) -> Generator[TestClient, None, None]:
    """Test client for an app started without a training function."""
    app = create_app(
        storage=storage,
        db_session_factory=session_factory,
        init_database=False,
    )

    with TestClient(app) as test_client:
        yield test_client
