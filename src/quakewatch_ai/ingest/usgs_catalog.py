"""
USGS FDSN event catalog client.

One GET per selection against https://earthquake.usgs.gov/fdsnws/event/1/query,
either by bounding box (catalog region) or by center + radius (user location).
The GeoJSON feature collection is mapped to SeismicEvent records in response order
(orderby=time → newest first), capped at the configured limit.

Any transport or parse failure collapses to an empty list; callers treat that as
"no data" rather than an error.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from quakewatch_ai.ingest.regions import Selection
from quakewatch_ai.settings import CatalogConfig, user_agent


@dataclass(frozen=True)
class SeismicEvent:
    id: str
    magnitude: float
    place: str
    time: datetime  # UTC
    lat: float
    lng: float
    depth: float  # km

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "magnitude": self.magnitude,
            "place": self.place,
            "time": self.time.isoformat(),
            "lat": self.lat,
            "lng": self.lng,
            "depth": self.depth,
        }


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def build_query(selection: Selection, cfg: CatalogConfig, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    params: Dict[str, Any] = {
        "format": "geojson",
        "starttime": _iso(now - timedelta(days=cfg.lookback_days)),
        "endtime": _iso(now),
        "minmagnitude": cfg.min_magnitude,
        "orderby": cfg.order_by,
        "limit": cfg.limit,
    }
    if selection.by_radius:
        lat, lng = selection.center
        params.update({"latitude": lat, "longitude": lng, "maxradiuskm": cfg.radius_km})
    else:
        min_lat, min_lng, max_lat, max_lng = selection.fetch_region.bbox
        params.update(
            {
                "minlatitude": min_lat,
                "minlongitude": min_lng,
                "maxlatitude": max_lat,
                "maxlongitude": max_lng,
            }
        )
    return params


def parse_feature(feat: Dict[str, Any]) -> Optional[SeismicEvent]:
    """One GeoJSON feature → SeismicEvent, or None if it lacks magnitude/time/coordinates."""
    try:
        props = feat["properties"]
        coords = feat["geometry"]["coordinates"]
        mag = props["mag"]
        t_ms = props["time"]
        if mag is None or t_ms is None:
            return None
        depth = coords[2] if len(coords) > 2 and coords[2] is not None else 0.0
        return SeismicEvent(
            id=str(feat.get("id", "")),
            magnitude=float(mag),
            place=props.get("place", "") or "",
            time=datetime.fromtimestamp(t_ms / 1000.0, tz=timezone.utc),
            lat=float(coords[1]),
            lng=float(coords[0]),
            depth=float(depth),
        )
    except (KeyError, IndexError, TypeError, ValueError, OverflowError, OSError) as exc:
        logger.debug("Skipping malformed feature {}: {}", feat.get("id") if isinstance(feat, dict) else "?", exc)
        return None


def parse_feature_collection(payload: Any, limit: int) -> List[SeismicEvent]:
    features = payload["features"]
    events: List[SeismicEvent] = []
    skipped = 0
    for feat in features:
        ev = parse_feature(feat)
        if ev is None:
            skipped += 1
            continue
        events.append(ev)
    if skipped:
        logger.debug("Skipped {} malformed features", skipped)
    return events[:limit]


async def fetch_events(
    selection: Selection,
    cfg: CatalogConfig,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> List[SeismicEvent]:
    params = build_query(selection, cfg, now=now)
    logger.info(
        "Querying catalog for {} ({})",
        selection.label,
        "radius" if selection.by_radius else "bbox",
    )

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(
            headers={"User-Agent": user_agent(cfg), "Accept": "application/geo+json, application/json"},
            follow_redirects=True,
        )
    try:
        r = await client.get(cfg.url, params=params, timeout=cfg.timeout_seconds)
        r.raise_for_status()
        events = parse_feature_collection(r.json(), cfg.limit)
    # ValueError covers bad JSON and bodies that are not valid UTF-8
    except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
        logger.warning("Catalog fetch failed for {}: {!r}", selection.label, exc)
        return []
    finally:
        if own_client:
            await client.aclose()

    logger.info("Catalog returned {} events for {}", len(events), selection.label)
    return events
