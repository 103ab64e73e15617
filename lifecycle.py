"""
Donation lifecycle: available -> claimed -> picked, with expiry as a derived
terminal state.

Who is acting is modelled as an explicit union of actor types built once per
request by `actor_for`. Guards dispatch on the actor type; nothing below
compares role strings.

Every transition re-reads the donation, checks its guards, then writes
through the store's compare-and-set so two racing claimants can never both
win.
"""

from collections import namedtuple
from dataclasses import dataclass
from typing import Optional

from errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from geo import Coordinates, distance_km, parse_coordinates
from models import (Donation, utcnow, ROLE_DONOR, ROLE_NGO,
                    STATUS_AVAILABLE, STATUS_CLAIMED, STATUS_PICKED, STATUS_EXPIRED)
from utils import parse_datetime


@dataclass(frozen=True)
class DonorActor:
    user_id: int
    display_name: str


@dataclass(frozen=True)
class NgoActor:
    user_id: int
    display_name: str
    center: Optional[Coordinates]
    operational_radius_km: float


def actor_for(user):
    if user.role == ROLE_DONOR:
        return DonorActor(user.id, user.display_name)
    if user.role == ROLE_NGO:
        return NgoActor(user.id, user.display_name, user.coordinates, user.effective_radius_km)
    raise AuthorizationError(f'Unsupported role: {user.role}', code='ROLE_NOT_ALLOWED')


ClaimResult = namedtuple('ClaimResult', ['donation', 'distance_km'])

REQUIRED_FIELDS = ('title', 'description', 'quantity', 'food_type', 'expiry_time', 'pickup_window', 'location')
TEXT_FIELDS = ('title', 'description', 'quantity', 'food_type')
READ_ONLY_FIELDS = ('status', 'claimed_by', 'claimed_by_name', 'claimed_at', 'picked_up_at',
                    'donor_id', 'donor_name')


# ==========================================
#  CONFLICT CLASSIFICATION
# ==========================================
def _claim_conflict(donation):
    if donation.is_expired:
        return StateConflictError('This donation has expired and cannot be claimed.',
                                  code='DONATION_EXPIRED')
    if donation.status in (STATUS_CLAIMED, STATUS_PICKED):
        return StateConflictError('This donation has already been claimed by another NGO.',
                                  code='ALREADY_CLAIMED')
    return StateConflictError('Donation is not available for claiming.')


def _pickup_conflict(donation):
    if donation.status == STATUS_PICKED:
        return StateConflictError('This donation has already been picked up.', code='ALREADY_PICKED')
    return StateConflictError('This donation has not been claimed.', code='NOT_CLAIMED')


def _delete_conflict(donation):
    return StateConflictError('Cannot delete. This donation has already been claimed.',
                              code='ALREADY_CLAIMED')


# ==========================================
#  PAYLOAD CLEANING
# ==========================================
def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def _clean_location(location):
    if not isinstance(location, dict):
        raise ValidationError('Location must be an object', fields={'location': 'must be an object'})
    if _is_blank(location.get('address')):
        raise ValidationError('Location address is required', fields={'location.address': 'required'})

    # Accept both {lat, lng} and the {coordinates: {lat, lng}} shape we send out
    raw = location.get('coordinates')
    if not isinstance(raw, dict):
        raw = location
    coords = parse_coordinates(raw.get('lat'), raw.get('lng'))

    return {
        'address': str(location['address']).strip(),
        'latitude': coords.lat if coords else None,
        'longitude': coords.lng if coords else None
    }


def _clean_fields(data):
    """Turns request data into model attributes. Validates everything before anything is applied."""
    cleaned = {}

    for field in TEXT_FIELDS:
        if field in data:
            if _is_blank(data[field]):
                raise ValidationError(f'{field} cannot be empty', fields={field: 'required'})
            cleaned[field] = str(data[field]).strip()

    if 'image_url' in data:
        cleaned['image_url'] = data['image_url'] or None

    if 'expiry_time' in data:
        cleaned['expiry_time'] = parse_datetime(data['expiry_time'], 'expiry_time')

    if 'pickup_window' in data:
        window = data['pickup_window']
        if not isinstance(window, dict):
            raise ValidationError('pickup_window must be an object with start and end',
                                  fields={'pickup_window': 'must be an object'})
        if 'start' in window:
            cleaned['pickup_start'] = parse_datetime(window['start'], 'pickup_window.start')
        if 'end' in window:
            cleaned['pickup_end'] = parse_datetime(window['end'], 'pickup_window.end')

    if 'location' in data:
        cleaned.update(_clean_location(data['location']))

    return cleaned


def _as_dict(payload):
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError('Donation data must be an object', fields={'body': 'must be an object'})
    return payload


def _check_window(start, end):
    if start is None or end is None:
        raise ValidationError('Pickup window needs both start and end',
                              fields={'pickup_window': 'start and end are required'})
    if start > end:
        raise ValidationError('Pickup window start must not be after its end',
                              fields={'pickup_window': 'start must be <= end'})


def _get(store, donation_id):
    donation = store.find_by_id(donation_id)
    if donation is None:
        raise NotFoundError('Donation not found')
    return donation


# ==========================================
#  TRANSITIONS
# ==========================================
def create_donation(store, actor, payload):
    if not isinstance(actor, DonorActor):
        raise AuthorizationError('Only donors can post donations.', code='ROLE_NOT_ALLOWED')

    payload = _as_dict(payload)
    missing = {field: 'required' for field in REQUIRED_FIELDS if _is_blank(payload.get(field))}
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

    cleaned = _clean_fields(payload)
    _check_window(cleaned.get('pickup_start'), cleaned.get('pickup_end'))

    donation = Donation(
        donor_id=actor.user_id,
        donor_name=actor.display_name,
        status=STATUS_AVAILABLE,
        **cleaned
    )
    return store.add(donation)


def claim(store, donation_id, actor):
    """
    Reserves an available donation for an NGO.

    The geo guard only applies when both sides have coordinates. The distance
    is computed once, up front, and returned with the result.
    """
    donation = _get(store, donation_id)

    if donation.status != STATUS_AVAILABLE or donation.is_expired:
        raise _claim_conflict(donation)

    if not isinstance(actor, NgoActor):
        raise AuthorizationError('Only NGOs can claim donations.', code='ROLE_NOT_ALLOWED')

    distance = None
    coords = donation.coordinates
    if coords is not None and actor.center is not None:
        distance = distance_km(actor.center.lat, actor.center.lng, coords.lat, coords.lng)
        if distance > actor.operational_radius_km:
            raise AuthorizationError(
                f'This donation is {distance:.1f}km away, outside your operational radius '
                f'of {actor.operational_radius_km:g}km.',
                code='OUT_OF_RANGE',
                details={'distance_km': round(distance, 2),
                         'operational_radius_km': actor.operational_radius_km}
            )

    now = utcnow()
    claimed = store.persist_transition(
        donation.id,
        STATUS_AVAILABLE,
        {
            'status': STATUS_CLAIMED,
            'claimed_by': actor.user_id,
            'claimed_by_name': actor.display_name,
            'claimed_at': now
        },
        not_expired_at=now,
        on_conflict=_claim_conflict
    )
    return ClaimResult(claimed, distance)


def mark_picked(store, donation_id, actor):
    donation = _get(store, donation_id)

    if donation.status in (STATUS_CLAIMED, STATUS_PICKED) and donation.claimed_by != actor.user_id:
        raise AuthorizationError('Only the NGO that claimed this donation can confirm pickup.',
                                 code='NOT_CLAIMANT')
    if donation.status != STATUS_CLAIMED:
        raise _pickup_conflict(donation)

    return store.persist_transition(
        donation.id,
        STATUS_CLAIMED,
        {'status': STATUS_PICKED, 'picked_up_at': utcnow()},
        expected_claimed_by=actor.user_id,
        on_conflict=_pickup_conflict
    )


def delete_donation(store, donation_id, actor):
    donation = _get(store, donation_id)

    if donation.donor_id != actor.user_id:
        raise AuthorizationError('Unauthorized. You did not post this.', code='NOT_OWNER')
    if donation.status not in (STATUS_AVAILABLE, STATUS_EXPIRED):
        raise _delete_conflict(donation)

    title = donation.title
    store.delete_if_status(donation.id, (STATUS_AVAILABLE, STATUS_EXPIRED), on_conflict=_delete_conflict)
    return title


def update_donation(store, donation_id, actor, fields):
    donation = _get(store, donation_id)

    if donation.donor_id != actor.user_id:
        raise AuthorizationError('Unauthorized. You did not post this.', code='NOT_OWNER')

    fields = _as_dict(fields)
    read_only = {field: 'read-only' for field in READ_ONLY_FIELDS if field in fields}
    if read_only:
        raise ValidationError('Status and claim fields cannot be edited directly.', fields=read_only)

    # Expired is terminal whether or not the sweep has persisted it yet
    if donation.is_expired:
        raise StateConflictError('This donation has expired and can no longer be edited.',
                                 code='DONATION_EXPIRED')

    cleaned = _clean_fields(fields)
    _check_window(cleaned.get('pickup_start', donation.pickup_start),
                  cleaned.get('pickup_end', donation.pickup_end))

    for attr, value in cleaned.items():
        setattr(donation, attr, value)
    return store.save(donation)
