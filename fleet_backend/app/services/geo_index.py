"""
Geographic helpers for truck matching.

Great-circle distances and "nearest within radius" queries. Everything here
is pure: no I/O and no shared state.
"""

import math
from typing import Any, Callable, Iterable, Iterator, List, NamedTuple, Optional

# Mean Earth radius in kilometers
EARTH_RADIUS_KM = 6371.0


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float


class RankedCandidate(NamedTuple):
    candidate: Any
    distance_km: float


def validate_coordinates(latitude: Optional[float], longitude: Optional[float]) -> List[str]:
    """
    Check a coordinate pair.

    Returns:
        Names of the offending fields; empty when the pair is usable
    """
    invalid = []
    if latitude is None or not math.isfinite(latitude) or not -90.0 <= latitude <= 90.0:
        invalid.append("latitude")
    if longitude is None or not math.isfinite(longitude) or not -180.0 <= longitude <= 180.0:
        invalid.append("longitude")
    return invalid


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push `a` a hair past 1 for antipodal points
    a = min(1.0, a)
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def distance(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def _default_position(candidate: Any) -> Optional[GeoPoint]:
    if isinstance(candidate, GeoPoint):
        return candidate
    latitude = getattr(candidate, "current_latitude", None)
    longitude = getattr(candidate, "current_longitude", None)
    if latitude is None or longitude is None:
        return None
    return GeoPoint(latitude, longitude)


def _default_ident(candidate: Any) -> Any:
    return getattr(candidate, "id", 0)


class NearestCandidates:
    """
    Candidates within a radius of a point, nearest first.

    The ranking is computed on first iteration and reused afterwards, so the
    sequence can be iterated any number of times with the same result.
    Candidates without a position are skipped.
    """

    def __init__(
        self,
        point: GeoPoint,
        candidates: Iterable[Any],
        max_distance_km: float,
        position: Callable[[Any], Optional[GeoPoint]] = _default_position,
        ident: Callable[[Any], Any] = _default_ident,
    ):
        self.point = point
        self.max_distance_km = max_distance_km
        self._candidates = list(candidates)
        self._position = position
        self._ident = ident
        self._ranked: Optional[List[RankedCandidate]] = None

    def _rank(self) -> List[RankedCandidate]:
        ranked = []
        for candidate in self._candidates:
            where = self._position(candidate)
            if where is None:
                continue
            km = distance(self.point, where)
            if km <= self.max_distance_km:
                ranked.append(RankedCandidate(candidate, km))
        ranked.sort(key=lambda item: (item.distance_km, self._ident(item.candidate)))
        return ranked

    def __iter__(self) -> Iterator[RankedCandidate]:
        if self._ranked is None:
            self._ranked = self._rank()
        return iter(self._ranked)

    def __len__(self) -> int:
        if self._ranked is None:
            self._ranked = self._rank()
        return len(self._ranked)

    def __bool__(self) -> bool:
        return len(self) > 0


def nearest(
    point: GeoPoint,
    candidates: Iterable[Any],
    max_distance_km: float,
    position: Callable[[Any], Optional[GeoPoint]] = _default_position,
    ident: Callable[[Any], Any] = _default_ident,
) -> NearestCandidates:
    """
    Rank candidates within `max_distance_km` of `point`.

    Ties on distance are broken by the candidate identifier.

    Usage:
        for ranked in nearest(GeoPoint(-1.30, 36.80), trucks, 50):
            print(ranked.candidate.id, round(ranked.distance_km, 1))
    """
    return NearestCandidates(point, candidates, max_distance_km, position=position, ident=ident)
