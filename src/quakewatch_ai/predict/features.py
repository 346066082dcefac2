from __future__ import annotations

import math
from bisect import bisect_right, insort
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

from quakewatch_ai.ingest.usgs_catalog import SeismicEvent

FEATURE_NAMES = ("magnitude", "depth", "lat", "lng", "epoch", "month_sin", "month_cos")
NUM_FEATURES = len(FEATURE_NAMES)

FOLLOW_UP_WINDOW = timedelta(days=30)
EPOCH_SCALE = 1e9  # applied to epoch milliseconds


@dataclass
class TrainingExample:
    features: List[float]
    label: int


def time_features(t: datetime) -> Tuple[float, float, float]:
    """
    (scaled epoch, sin month, cos month). Month is 0..11 so the encoding wraps
    cleanly from December to January.
    """
    epoch_ms = t.timestamp() * 1000.0
    month = t.month - 1
    angle = month * math.pi / 6
    return epoch_ms / EPOCH_SCALE, math.sin(angle), math.cos(angle)


def encode(magnitude: float, depth: float, lat: float, lng: float, t: datetime) -> List[float]:
    epoch, m_sin, m_cos = time_features(t)
    return [float(magnitude), float(depth), float(lat), float(lng), epoch, m_sin, m_cos]


def event_features(ev: SeismicEvent) -> List[float]:
    return encode(ev.magnitude, ev.depth, ev.lat, ev.lng, ev.time)


def follow_up_labels(events: Sequence[SeismicEvent]) -> List[int]:
    """
    Label i is 1 when some event at a smaller index j < i happened strictly after
    event i and strictly before event i + 30 days.

    Only list position decides which events are looked at, not chronology: with the
    catalog's newest-first ordering the earlier indices are the later events, but the
    rule holds for any input order.
    """
    labels: List[int] = []
    seen: List[datetime] = []  # sorted times of events[0:i]
    for ev in events:
        t = ev.time
        k = bisect_right(seen, t)
        labels.append(1 if k < len(seen) and seen[k] < t + FOLLOW_UP_WINDOW else 0)
        insort(seen, t)
    return labels


def build_examples(events: Sequence[SeismicEvent]) -> List[TrainingExample]:
    labels = follow_up_labels(events)
    return [TrainingExample(features=event_features(ev), label=lab) for ev, lab in zip(events, labels)]
