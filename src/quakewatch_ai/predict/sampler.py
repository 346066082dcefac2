"""
Synthetic candidate scoring.

Candidates are drawn uniformly around the selection center and scored with the trained
classifier at the current time. This is forward sampling, not a density estimate over
the fetched events: the ranking says which random draws the model likes best, nothing
about where real events cluster.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from quakewatch_ai.predict.features import encode
from quakewatch_ai.predict.train_risk import TrainedClassifier
from quakewatch_ai.settings import SamplerConfig

RISK_LABELS = {"high": "ALTO", "medium": "MEDIO", "low": "BAJO"}


@dataclass
class Prediction:
    id: int
    lat: float
    lng: float
    depth: float
    magnitude: float
    probability: float  # 0..100
    region: str
    timeframe: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lat": self.lat,
            "lng": self.lng,
            "depth": self.depth,
            "magnitude": self.magnitude,
            "probability": self.probability,
            "region": self.region,
            "timeframe": self.timeframe,
        }


def sample_candidates(
    classifier: TrainedClassifier,
    center: Tuple[float, float],
    region_label: str,
    cfg: SamplerConfig = SamplerConfig(),
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> List[Prediction]:
    rng = rng or random.Random()
    now = now or datetime.now(timezone.utc)
    lat0, lng0 = center

    drafts = []
    rows = []
    for i in range(cfg.count):
        lat = lat0 + (rng.random() - 0.5) * 2 * cfg.jitter_deg
        lng = lng0 + (rng.random() - 0.5) * 2 * cfg.jitter_deg
        depth = rng.random() * cfg.depth_max_km
        magnitude = cfg.mag_min + rng.random() * cfg.mag_span
        days = cfg.timeframe_min_days + int(rng.random() * cfg.timeframe_span_days)
        drafts.append((i, lat, lng, depth, magnitude, days))
        rows.append(encode(magnitude, depth, lat, lng, now))

    probs = classifier.predict_many(rows)

    preds = [
        Prediction(
            id=i,
            lat=lat,
            lng=lng,
            depth=depth,
            magnitude=magnitude,
            probability=p * 100.0,
            region=region_label,
            timeframe=f"{days} días",
        )
        for (i, lat, lng, depth, magnitude, days), p in zip(drafts, probs)
    ]
    # sorted() is stable: equal probabilities keep generation order
    return sorted(preds, key=lambda p: p.probability, reverse=True)


def risk_level(predictions: Sequence[Prediction]) -> str:
    if not predictions:
        return "low"
    avg = sum(p.probability for p in predictions) / len(predictions)
    if avg > 60:
        return "high"
    if avg > 30:
        return "medium"
    return "low"
