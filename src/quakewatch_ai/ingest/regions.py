from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from quakewatch_ai.settings import USER_REGION, Region, Settings


class UnknownRegionError(KeyError):
    pass


@dataclass(frozen=True)
class Selection:
    """
    What one pipeline run works against.

    region_key is what the user picked ("user" or a catalog key).
    fetch_region is the catalog region whose bbox is queried, or None when the
    catalog is queried by center + radius around the user's location.
    """

    region_key: str
    label: str
    center: Tuple[float, float]
    fetch_region: Optional[Region]

    @property
    def by_radius(self) -> bool:
        return self.fetch_region is None


def get_region(regions: Dict[str, Region], key: str) -> Region:
    try:
        return regions[key]
    except KeyError:
        raise UnknownRegionError(key) from None


def resolve_selection(
    settings: Settings,
    region_key: str,
    location: Optional[Tuple[float, float]] = None,
) -> Selection:
    """
    "user" with a location → radius query around it.
    "user" without a location → fall back to the configured default region
    (used both for the query and as the sampling center).
    """
    if region_key == USER_REGION:
        if location is not None:
            lat, lng = float(location[0]), float(location[1])
            return Selection(
                region_key=USER_REGION,
                label=settings.sampler.user_label,
                center=(lat, lng),
                fetch_region=None,
            )
        region_key = settings.fallback_region

    reg = get_region(settings.regions, region_key)
    return Selection(region_key=reg.key, label=reg.name, center=(reg.lat, reg.lng), fetch_region=reg)
