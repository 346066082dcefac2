from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query

from quakewatch_ai import __version__
from quakewatch_ai.ingest.regions import UnknownRegionError
from quakewatch_ai.jobs.run_pipeline import RiskPipeline
from quakewatch_ai.settings import USER_REGION

app = FastAPI(title="quakewatch-ai", version=__version__)

# Lazy-initialized pipeline (one per process, like the dashboard it backs)
_pipeline: Optional[RiskPipeline] = None


def _ensure_pipeline() -> RiskPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = RiskPipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[RiskPipeline]) -> None:
    global _pipeline
    _pipeline = pipeline


@app.get("/health")
def health() -> Dict[str, Any]:
    p = _ensure_pipeline()
    return {
        "ok": True,
        "generation": p.state.generation,
        "classifier_status": p.state.classifier_status,
    }


@app.get("/regions")
def regions() -> List[Dict[str, Any]]:
    p = _ensure_pipeline()
    return [
        {"key": r.key, "name": r.name, "lat": r.lat, "lng": r.lng, "bbox": list(r.bbox)}
        for r in p.settings.regions.values()
    ]


@app.post("/select")
async def select(
    region: str = Query(USER_REGION),
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    wait: bool = False,
) -> Dict[str, Any]:
    # Schedules fetch → train → sample; poll /dashboard unless wait=true.
    p = _ensure_pipeline()
    location = (lat, lng) if lat is not None and lng is not None else None
    try:
        task = p.select(region, location)
    except UnknownRegionError:
        raise HTTPException(status_code=404, detail=f"Unknown region: {region}")
    if wait:
        # shield: a client disconnect must not cancel the run itself
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # superseded by a newer /select; report whatever state that one left
    return p.state.snapshot()


@app.get("/dashboard")
def dashboard() -> Dict[str, Any]:
    return _ensure_pipeline().state.snapshot()


@app.get("/events")
def events(limit: int = Query(50, ge=1, le=2000)) -> List[Dict[str, Any]]:
    return [e.to_dict() for e in _ensure_pipeline().state.events[:limit]]


@app.get("/predictions")
def predictions() -> List[Dict[str, Any]]:
    return [pr.to_dict() for pr in _ensure_pipeline().state.predictions]
