"""
Haversine distance and the proximity filter used by donation discovery.
Distances are "as the crow flies", not road distance.
"""

import math
from collections import namedtuple

from errors import ValidationError

EARTH_RADIUS_KM = 6371
# No two points on the globe are further apart than this
MAX_DISTANCE_KM = math.pi * EARTH_RADIUS_KM

Coordinates = namedtuple('Coordinates', ['lat', 'lng'])


def distance_km(lat1, lng1, lat2, lng2):
    """
    Great-circle distance between two points in decimal degrees.

    Callers must not pass missing coordinates; filter those out first.

    Returns:
        Distance in kilometers
    """
    lat1, lng1, lat2, lng2 = map(math.radians, [lat1, lng1, lat2, lng2])

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # Rounding can push `a` a hair above 1 for antipodal points
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return c * EARTH_RADIUS_KM


def parse_coordinates(lat, lng, field='location'):
    """
    Turns raw lat/lng input (numbers or numeric strings) into Coordinates.

    Returns None when both are missing. Raises ValidationError when only one
    is given, when either is not a finite number, or when out of range.
    """
    if lat in (None, '') and lng in (None, ''):
        return None
    if lat in (None, '') or lng in (None, ''):
        raise ValidationError('Latitude and longitude must be provided together',
                              fields={field: 'lat and lng must be provided together'})

    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        raise ValidationError('Coordinates must be numbers',
                              fields={field: 'lat and lng must be numbers'})

    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError('Coordinates must be finite numbers',
                              fields={field: 'lat and lng must be finite'})
    if not -90 <= lat <= 90:
        raise ValidationError('Latitude out of range', fields={field: 'lat must be within [-90, 90]'})
    if not -180 <= lng <= 180:
        raise ValidationError('Longitude out of range', fields={field: 'lng must be within [-180, 180]'})

    return Coordinates(lat, lng)


def _usable_coordinates(donation):
    coords = donation.coordinates
    if coords is None or coords.lat is None or coords.lng is None:
        return None
    try:
        lat, lng = float(coords.lat), float(coords.lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return Coordinates(lat, lng)


def rank_within_radius(candidates, center, radius_km):
    """
    Pairs every candidate inside the radius with its distance, nearest first.

    Candidates without usable coordinates are never matched. Python's sort is
    stable, so equal distances keep their input order.

    Returns:
        List of (donation, distance_km) tuples
    """
    ranked = []

    for donation in candidates:
        coords = _usable_coordinates(donation)
        if coords is None:
            continue

        distance = distance_km(center.lat, center.lng, coords.lat, coords.lng)
        if distance <= radius_km:
            ranked.append((donation, distance))

    ranked.sort(key=lambda pair: pair[1])
    return ranked


def filter_within_radius(candidates, center, radius_km):
    return [donation for donation, _ in rank_within_radius(candidates, center, radius_km)]
