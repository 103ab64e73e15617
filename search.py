"""
Radius expansion search for NGO donation discovery.

Donation density around an NGO is unpredictable, so the search starts tight
and widens in fixed steps until something turns up or the NGO's operational
radius is reached.
"""

import logging
from collections import namedtuple

from geo import MAX_DISTANCE_KM, rank_within_radius
from store import CANDIDATE_CAP

logger = logging.getLogger(__name__)

SEARCH_STEP_KM = 5.0

SearchResult = namedtuple('SearchResult', ['ranked', 'radius_km', 'filtered_by_location', 'passes'])


def expand_search(store, center, max_radius_km, limit=50, step_km=SEARCH_STEP_KM):
    """
    Runs the expansion and reports how it went.

    Args:
        store: anything with find_available(limit)
        center: Coordinates of the NGO, or None
        max_radius_km: the NGO's operational radius; never exceeded
        limit: cap on returned donations
        step_km: first radius and increment

    Returns:
        SearchResult. `ranked` holds (donation, distance_km) pairs nearest
        first; when the center is unknown it holds (donation, None) pairs
        straight from find_available.
    """
    if center is None or center.lat is None or center.lng is None:
        logger.info("📍 No usable center, returning unfiltered available donations")
        donations = store.find_available(limit)
        return SearchResult([(d, None) for d in donations], None, False, 0)

    if step_km <= 0:
        raise ValueError('step_km must be positive')

    # Anything past half the globe already covers every point on it
    if not max_radius_km <= MAX_DISTANCE_KM:
        max_radius_km = MAX_DISTANCE_KM
    radius_km = min(step_km, max_radius_km)
    ranked = []
    passes = 0

    while True:
        passes += 1
        candidates = store.find_available(CANDIDATE_CAP)
        ranked = rank_within_radius(candidates, center, radius_km)
        logger.debug(f"🔍 Pass {passes}: {len(ranked)} of {len(candidates)} donations within {radius_km}km")

        if ranked or radius_km >= max_radius_km:
            break
        radius_km = min(radius_km + step_km, max_radius_km)

    if not ranked:
        logger.info(f"📭 Nothing within the {max_radius_km}km operational radius")

    return SearchResult(ranked[:limit], radius_km, True, passes)


def find_nearby_for_ngo(store, center, max_radius_km, limit=50, step_km=SEARCH_STEP_KM):
    result = expand_search(store, center, max_radius_km, limit=limit, step_km=step_km)
    return [donation for donation, _ in result.ranked]
