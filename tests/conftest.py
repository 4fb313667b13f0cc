from __future__ import annotations

import os
import shutil
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

os.environ.setdefault("RESQ_DATABASE_URL", "sqlite://")
os.environ.setdefault("RESQ_JWT_SECRET", "test-secret-not-for-production-use-0123456789")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from resq.database import Base, build_engine, build_sessionmaker  # noqa: E402
from resq.models import Unit  # noqa: E402

START = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_session_factory(db_path: Path) -> sessionmaker:
    engine = build_engine(f"sqlite:///{db_path.as_posix()}")
    Base.metadata.create_all(engine)
    return build_sessionmaker(engine)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def add_units(factory: sessionmaker, *units: tuple) -> None:
    """units: (id, type, lat, lng[, status])"""
    with factory() as session:
        for spec in units:
            unit_id, unit_type, lat, lng = spec[:4]
            status = spec[4] if len(spec) > 4 else "available"
            session.add(Unit(
                id=unit_id, name=f"Unit {unit_id}", type=unit_type,
                status=status, lat=lat, lng=lng,
            ))
        session.commit()


@pytest.fixture
def tmp_path() -> Generator[Path, None, None]:
    base = Path("pytest_artifacts")
    base.mkdir(parents=True, exist_ok=True)
    path = base / uuid4().hex
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def session_factory(tmp_path: Path) -> sessionmaker:
    return make_session_factory(tmp_path / "resq.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
