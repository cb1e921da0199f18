"""Decide whether an activity visited a mountain pass.

Pure functions: an activity visits a pass when its start or end point lies
within MATCH_RADIUS_KM of the pass summit coordinate.
"""

import math

from passbase.models import ExternalActivity, MountainPass

EARTH_RADIUS_KM = 6371.0
MATCH_RADIUS_KM = 5.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute great-circle distance in kilometers between two lat/lon points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def matches(activity: ExternalActivity, mountain_pass: MountainPass) -> bool:
    """True if the activity's start or end point is within the matching radius (inclusive)."""
    for point in (activity.start_latlng, activity.end_latlng):
        if point is None:
            continue
        if haversine_km(point[0], point[1], mountain_pass.lat, mountain_pass.lng) <= MATCH_RADIUS_KM:
            return True
    return False


def first_matching_pass(activity: ExternalActivity,
                        passes: list[MountainPass]) -> MountainPass | None:
    """Return the first pass in catalog order the activity visited, or None."""
    if activity.start_latlng is None and activity.end_latlng is None:
        return None
    for mountain_pass in passes:
        if matches(activity, mountain_pass):
            return mountain_pass
    return None
