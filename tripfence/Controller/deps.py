# tripfence/Controller/deps.py

from typing import Generator, Optional
from tripfence.DB.session import SessionLocal
from tripfence.Services.pipeline import PositionPipeline

_pipeline: Optional[PositionPipeline] = None


def get_DB() -> Generator:
    DB = SessionLocal()
    try:
        yield DB
    finally:
        DB.close()


def get_pipeline() -> PositionPipeline:
    """Process-wide pipeline (one TripDetector, one registry, one lock table)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = PositionPipeline()
    return _pipeline
