from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from quakewatch_ai.ingest.usgs_catalog import SeismicEvent
from quakewatch_ai.settings import Settings

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _event(i: int, days: float, mag: float = 3.0, lat: float = 36.0, lng: float = -119.0, depth: float = 8.0):
    return SeismicEvent(
        id=f"ev{i}",
        magnitude=mag,
        place=f"{i} km N of Somewhere, CA",
        time=T0 + timedelta(days=days),
        lat=lat,
        lng=lng,
        depth=depth,
    )


@pytest.fixture
def make_event():
    return _event


@pytest.fixture
def event_series():
    """Newest-first series of n events spaced `step` days apart."""

    def build(n: int, step: float = 5.0):
        return [_event(i, (n - i) * step, mag=2.5 + (i % 5) * 0.4, depth=float(i % 20)) for i in range(n)]

    return build


@pytest.fixture
def fast_settings():
    s = Settings()
    s.train.epochs = 2
    s.train.seed = 0
    s.train.device = "cpu"
    return s
