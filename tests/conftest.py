import os

# Settings are read at import time; point them at a throwaway database
# before anything from tripfence is imported.
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest_tripfence.db")

import pytest
from sqlalchemy.orm import sessionmaker

from tripfence.DB.database import create_all_tables
from tripfence.DB.session import build_engine
from tripfence.Services.event_publisher import InMemoryEventSink
from tripfence.Services.geofence_registry import GeofenceRegistry
from tripfence.Services.pipeline import PositionPipeline
from tripfence.Services.trip_detector import TripDetector


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'tripfence.db'}")
    create_all_tables(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def registry(session_factory):
    return GeofenceRegistry(session_factory)


@pytest.fixture
def pipeline(session_factory, sink, registry):
    return PositionPipeline(
        session_factory=session_factory,
        sink=sink,
        detector=TripDetector(),
        registry=registry,
        workers=4
    )
