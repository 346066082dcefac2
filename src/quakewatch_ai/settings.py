from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import torch
import yaml

CONFIG_DEFAULT = Path(os.getenv("QUAKEWATCH_CONFIG", "configs/quakewatch.yaml"))

USER_REGION = "user"


@dataclass(frozen=True)
class Region:
    key: str
    name: str
    lat: float
    lng: float
    # (min_lat, min_lng, max_lat, max_lng)
    bbox: Tuple[float, float, float, float]


@dataclass
class CatalogConfig:
    url: str = "https://earthquake.usgs.gov/fdsnws/event/1/query"
    lookback_days: int = 365
    min_magnitude: float = 2.5
    limit: int = 2000
    radius_km: float = 1000.0
    order_by: str = "time"
    timeout_seconds: int = 20
    user_agent_env: str = "QUAKEWATCH_USER_AGENT"


@dataclass
class TrainConfig:
    epochs: int = 50
    batch_size: int = 32
    lr: float = 1e-3
    val_split: float = 0.2
    dropout: float = 0.2
    hidden: Tuple[int, ...] = (64, 32, 16)
    min_events: int = 11
    seed: Optional[int] = None
    device: str = "cuda" if torch.cuda.is_available() else "cpu"


@dataclass
class SamplerConfig:
    count: int = 10
    jitter_deg: float = 1.0
    depth_max_km: float = 30.0
    mag_min: float = 3.0
    mag_span: float = 3.0
    timeframe_min_days: int = 7
    timeframe_span_days: int = 23
    user_label: str = "Mi ubicación"


DEFAULT_REGIONS: Dict[str, Region] = {
    "california": Region("california", "California", 36.7783, -119.4179, (32.0, -125.0, 42.0, -114.0)),
    "alaska": Region("alaska", "Alaska", 64.0685, -152.2782, (54.0, -179.0, 71.0, -129.0)),
    "yellowstone": Region("yellowstone", "Yellowstone", 44.6, -110.5, (44.0, -111.0, 45.0, -109.0)),
    "newmadrid": Region("newmadrid", "New Madrid", 36.5861, -89.5889, (35.0, -91.0, 38.0, -88.0)),
}


@dataclass
class Settings:
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    train: TrainConfig = field(default_factory=TrainConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    regions: Dict[str, Region] = field(default_factory=lambda: dict(DEFAULT_REGIONS))
    fallback_region: str = "california"
    log_level: str = os.getenv("QUAKEWATCH_LOG_LEVEL", "INFO")
    log_dir: Optional[Path] = Path(os.environ["QUAKEWATCH_LOG_DIR"]) if os.getenv("QUAKEWATCH_LOG_DIR") else None


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _parse_region(r: Dict[str, Any]) -> Region:
    bbox = r["bbox"]
    if len(bbox) != 4:
        raise ValueError(f"Region {r.get('key')!r}: bbox needs 4 numbers (min_lat, min_lng, max_lat, max_lng)")
    return Region(
        key=str(r["key"]),
        name=str(r.get("name", r["key"])),
        lat=float(r["lat"]),
        lng=float(r["lng"]),
        bbox=tuple(float(v) for v in bbox),
    )


def _override(obj, section: Dict[str, Any]):
    known = {k: v for k, v in (section or {}).items() if hasattr(obj, k)}
    if "hidden" in known:
        known["hidden"] = tuple(int(h) for h in known["hidden"])
    return replace(obj, **known)


def load_settings(config_path: Path = CONFIG_DEFAULT) -> Settings:
    """
    Built-in defaults, overridden by whatever the YAML file provides.
    A missing file is fine: the defaults cover the whole catalog and region set.
    """
    settings = Settings()
    if not config_path.exists():
        return settings

    cfg = _load_yaml(config_path)
    defaults = cfg.get("defaults", {}) or {}

    settings.catalog = _override(settings.catalog, cfg.get("catalog", {}))
    settings.train = _override(settings.train, cfg.get("train", {}))
    settings.sampler = _override(settings.sampler, cfg.get("sampler", {}))

    regions_cfg: List[Dict[str, Any]] = cfg.get("regions", []) or []
    if regions_cfg:
        regions = {}
        for r in regions_cfg:
            if not bool(r.get("enabled", defaults.get("enabled", True))):
                continue
            reg = _parse_region(r)
            regions[reg.key] = reg
        settings.regions = regions

    settings.fallback_region = str(defaults.get("fallback_region", settings.fallback_region))
    settings.log_level = str(defaults.get("log_level", settings.log_level))
    if defaults.get("log_dir"):
        settings.log_dir = Path(defaults["log_dir"])

    if settings.fallback_region not in settings.regions:
        raise ValueError(f"fallback_region {settings.fallback_region!r} is not a configured region")
    return settings


def user_agent(catalog: CatalogConfig) -> str:
    ua = os.getenv(catalog.user_agent_env)
    if ua:
        return ua
    return "quakewatch-ai/0.1 (+https://earthquake.usgs.gov/fdsnws/event/1/)"
