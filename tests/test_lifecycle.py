import pytest
from datetime import timedelta
from sqlalchemy.exc import OperationalError
from errors import AuthorizationError, NotFoundError, StateConflictError, StoreUnavailableError, ValidationError
from extensions import db
from lifecycle import (DonorActor, NgoActor, actor_for, claim, create_donation, delete_donation,
                       mark_picked, update_donation)
from models import Donation, utcnow
from conftest import FAR_AWAY

# ==========================================
#  ACTORS
# ==========================================

def test_actor_for_builds_the_right_variant(donor_user, ngo_user):
    assert isinstance(actor_for(donor_user), DonorActor)

    ngo = actor_for(ngo_user)
    assert isinstance(ngo, NgoActor)
    assert ngo.center == ngo_user.coordinates
    assert ngo.operational_radius_km == 20


def test_ngo_without_radius_gets_the_default(user_factory):
    ngo = user_factory("plain-ngo@test.com", "ngo")
    assert actor_for(ngo).operational_radius_km == 20
    assert actor_for(ngo).center is None


# ==========================================
#  1. CREATE
# ==========================================

def _payload(**overrides):
    now = utcnow()
    payload = {
        "title": "Idli batter",
        "description": "Fresh this morning",
        "quantity": "5 kg",
        "food_type": "raw",
        "expiry_time": (now + timedelta(days=1)).isoformat() + "Z",
        "pickup_window": {"start": now.isoformat(), "end": (now + timedelta(hours=3)).isoformat()},
        "location": {"address": "Indiranagar, Bangalore", "lat": 12.9784, "lng": 77.6408}
    }
    payload.update(overrides)
    return payload


def test_create_donation(stores, donor_user):
    donation_store, _ = stores
    donation = create_donation(donation_store, actor_for(donor_user), _payload())

    assert donation.id is not None
    assert donation.status == "available"
    assert donation.donor_name == donor_user.display_name
    assert donation.latitude == pytest.approx(12.9784)


def test_create_without_coordinates_is_fine(stores, donor_user):
    donation_store, _ = stores
    donation = create_donation(donation_store, actor_for(donor_user),
                               _payload(location={"address": "Somewhere"}))
    assert donation.coordinates is None


def test_create_rejects_ngo(stores, ngo_user):
    donation_store, _ = stores
    with pytest.raises(AuthorizationError) as exc:
        create_donation(donation_store, actor_for(ngo_user), _payload())
    assert exc.value.code == "ROLE_NOT_ALLOWED"


def test_create_reports_missing_fields(stores, donor_user):
    donation_store, _ = stores
    with pytest.raises(ValidationError) as exc:
        create_donation(donation_store, actor_for(donor_user), {"title": "Only a title"})
    assert "pickup_window" in exc.value.fields
    assert "location" in exc.value.fields


@pytest.mark.parametrize("location", [
    {"lat": 12.9, "lng": 77.6},
    {"address": "Somewhere", "lat": 95, "lng": 77.6},
    {"address": "Somewhere", "lat": 12.9},
])
def test_create_rejects_bad_location(stores, donor_user, location):
    donation_store, _ = stores
    with pytest.raises(ValidationError):
        create_donation(donation_store, actor_for(donor_user), _payload(location=location))


def test_create_rejects_inverted_pickup_window(stores, donor_user):
    donation_store, _ = stores
    now = utcnow()
    window = {"start": (now + timedelta(hours=3)).isoformat(), "end": now.isoformat()}
    with pytest.raises(ValidationError):
        create_donation(donation_store, actor_for(donor_user), _payload(pickup_window=window))


# ==========================================
#  2. CLAIM
# ==========================================

def test_claim_within_radius_returns_distance(stores, donation_factory, ngo_user):
    donation_store, _ = stores
    donation = donation_factory()

    result = claim(donation_store, donation.id, actor_for(ngo_user))

    assert result.donation.status == "claimed"
    assert result.donation.claimed_by == ngo_user.id
    assert result.donation.claimed_by_name == ngo_user.display_name
    assert result.donation.claimed_at is not None
    assert 4.4 < result.distance_km < 4.8


def test_claim_out_of_range_is_rejected(stores, donation_factory, ngo_user):
    donation_store, _ = stores
    donation = donation_factory(latitude=FAR_AWAY[0], longitude=FAR_AWAY[1])

    with pytest.raises(AuthorizationError) as exc:
        claim(donation_store, donation.id, actor_for(ngo_user))

    assert exc.value.code == "OUT_OF_RANGE"
    assert exc.value.details["distance_km"] > 20
    assert exc.value.details["operational_radius_km"] == 20
    assert "20km" in exc.value.message
    assert donation_store.find_by_id(donation.id).status == "available"


def test_claim_skips_geo_guard_without_coordinates(stores, donation_factory, user_factory):
    donation_store, _ = stores
    donation = donation_factory(latitude=None, longitude=None)
    ngo = user_factory("nowhere-ngo@test.com", "ngo", radius=1)

    result = claim(donation_store, donation.id, actor_for(ngo))

    assert result.distance_km is None
    assert result.donation.status == "claimed"


def test_claim_expired_but_still_available_in_storage(stores, donation_factory, ngo_user):
    donation_store, _ = stores
    donation = donation_factory(expiry_time=utcnow() - timedelta(hours=1))

    with pytest.raises(StateConflictError) as exc:
        claim(donation_store, donation.id, actor_for(ngo_user))

    assert exc.value.code == "DONATION_EXPIRED"
    assert "expired" in exc.value.message


def test_claim_by_donor_is_forbidden(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory()

    with pytest.raises(AuthorizationError) as exc:
        claim(donation_store, donation.id, actor_for(donor_user))
    assert exc.value.code == "ROLE_NOT_ALLOWED"


def test_second_claim_conflicts(stores, donation_factory, ngo_user, other_ngo):
    donation_store, _ = stores
    donation = donation_factory()
    claim(donation_store, donation.id, actor_for(ngo_user))

    with pytest.raises(StateConflictError) as exc:
        claim(donation_store, donation.id, actor_for(other_ngo))

    assert exc.value.code == "ALREADY_CLAIMED"
    assert donation_store.find_by_id(donation.id).claimed_by == ngo_user.id


def test_racing_claim_with_stale_read_loses(stores, donation_factory, ngo_user, other_ngo, monkeypatch):
    """Both claimants read 'available'; only the first write lands."""
    donation_store, _ = stores
    donation = donation_factory(latitude=None, longitude=None)
    stale = Donation(id=donation.id, status="available", expiry_time=donation.expiry_time,
                     donor_id=donation.donor_id)

    claim(donation_store, donation.id, actor_for(ngo_user))
    monkeypatch.setattr(donation_store, "find_by_id", lambda donation_id: stale)

    with pytest.raises(StateConflictError) as exc:
        claim(donation_store, donation.id, actor_for(other_ngo))

    assert exc.value.code == "ALREADY_CLAIMED"
    monkeypatch.undo()
    current = donation_store.find_by_id(donation.id)
    assert current.status == "claimed"
    assert current.claimed_by == ngo_user.id


def test_transition_against_stale_status_is_refused(stores, donation_factory, ngo_user, other_ngo):
    donation_store, _ = stores
    donation = donation_factory()
    fields = {"status": "claimed", "claimed_by": ngo_user.id, "claimed_by_name": "A"}

    donation_store.persist_transition(donation.id, "available", fields)
    with pytest.raises(StateConflictError):
        donation_store.persist_transition(donation.id, "available",
                                          dict(fields, claimed_by=other_ngo.id, claimed_by_name="B"))

    assert donation_store.find_by_id(donation.id).claimed_by == ngo_user.id


def test_claim_unknown_donation(stores, ngo_user):
    donation_store, _ = stores
    with pytest.raises(NotFoundError):
        claim(donation_store, 9999, actor_for(ngo_user))


# ==========================================
#  3. PICKUP
# ==========================================

def test_only_claimant_can_mark_picked(stores, donation_factory, ngo_user, other_ngo):
    donation_store, _ = stores
    donation = donation_factory()
    claim(donation_store, donation.id, actor_for(ngo_user))

    with pytest.raises(AuthorizationError) as exc:
        mark_picked(donation_store, donation.id, actor_for(other_ngo))
    assert exc.value.code == "NOT_CLAIMANT"

    picked = mark_picked(donation_store, donation.id, actor_for(ngo_user))
    assert picked.status == "picked"
    assert picked.picked_up_at is not None


def test_pickup_twice_conflicts(stores, donation_factory, ngo_user):
    donation_store, _ = stores
    donation = donation_factory()
    claim(donation_store, donation.id, actor_for(ngo_user))
    mark_picked(donation_store, donation.id, actor_for(ngo_user))

    with pytest.raises(StateConflictError) as exc:
        mark_picked(donation_store, donation.id, actor_for(ngo_user))
    assert exc.value.code == "ALREADY_PICKED"


def test_pickup_of_unclaimed_donation_conflicts(stores, donation_factory, ngo_user):
    donation_store, _ = stores
    donation = donation_factory()

    with pytest.raises(StateConflictError) as exc:
        mark_picked(donation_store, donation.id, actor_for(ngo_user))
    assert exc.value.code == "NOT_CLAIMED"


# ==========================================
#  4. DELETE / UPDATE
# ==========================================

def test_delete_available_donation(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory()
    donation_id = donation.id

    delete_donation(donation_store, donation_id, actor_for(donor_user))

    assert donation_store.find_by_id(donation_id) is None


def test_delete_expired_donation(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory(expiry_time=utcnow() - timedelta(days=1))
    donation_id = donation.id

    delete_donation(donation_store, donation_id, actor_for(donor_user))

    assert donation_store.find_by_id(donation_id) is None


def test_delete_claimed_donation_conflicts(stores, donation_factory, donor_user, ngo_user):
    donation_store, _ = stores
    donation = donation_factory()
    claim(donation_store, donation.id, actor_for(ngo_user))

    with pytest.raises(StateConflictError):
        delete_donation(donation_store, donation.id, actor_for(donor_user))


def test_delete_by_someone_else_is_forbidden(stores, donation_factory, user_factory):
    donation_store, _ = stores
    donation = donation_factory()
    stranger = user_factory("stranger@test.com", "donor")

    with pytest.raises(AuthorizationError) as exc:
        delete_donation(donation_store, donation.id, actor_for(stranger))
    assert exc.value.code == "NOT_OWNER"


def test_update_descriptive_fields(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory()

    updated = update_donation(donation_store, donation.id, actor_for(donor_user),
                              {"title": "Paneer Biryani", "quantity": "30 plates"})

    assert updated.title == "Paneer Biryani"
    assert updated.quantity == "30 plates"


def test_update_cannot_touch_status(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory()

    with pytest.raises(ValidationError) as exc:
        update_donation(donation_store, donation.id, actor_for(donor_user), {"status": "picked"})
    assert "status" in exc.value.fields


def test_rejected_update_leaves_donation_untouched(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory()
    start = donation.pickup_start

    with pytest.raises(ValidationError):
        update_donation(donation_store, donation.id, actor_for(donor_user), {
            "title": "Changed",
            "pickup_window": {"end": (start - timedelta(hours=1)).isoformat()}
        })

    db.session.commit()
    assert donation_store.find_by_id(donation.id).title == "Veg Biryani"


@pytest.mark.parametrize("stored_status", ["available", "expired"])
def test_expired_donation_cannot_be_revived(stores, donation_factory, donor_user, ngo_user, stored_status):
    donation_store, _ = stores
    donation = donation_factory(status=stored_status, expiry_time=utcnow() - timedelta(hours=1))

    with pytest.raises(StateConflictError) as exc:
        update_donation(donation_store, donation.id, actor_for(donor_user),
                        {"expiry_time": (utcnow() + timedelta(days=1)).isoformat()})
    assert exc.value.code == "DONATION_EXPIRED"

    with pytest.raises(StateConflictError) as exc:
        claim(donation_store, donation.id, actor_for(ngo_user))
    assert exc.value.code == "DONATION_EXPIRED"


def test_donation_data_must_be_an_object(stores, donation_factory, donor_user):
    donation_store, _ = stores
    donation = donation_factory()

    with pytest.raises(ValidationError):
        create_donation(donation_store, actor_for(donor_user), [1])
    with pytest.raises(ValidationError):
        update_donation(donation_store, donation.id, actor_for(donor_user), ["title"])


def test_update_by_someone_else_is_forbidden(stores, donation_factory, ngo_user):
    donation_store, _ = stores
    donation = donation_factory()

    with pytest.raises(AuthorizationError):
        update_donation(donation_store, donation.id, actor_for(ngo_user), {"title": "Mine now"})


# ==========================================
#  5. STORE BEHAVIOUR
# ==========================================

def test_find_available_hides_expired_and_orders_newest_first(stores, donation_factory):
    donation_store, _ = stores
    now = utcnow()
    donation_factory(title="Old", created_at=now - timedelta(hours=2))
    donation_factory(title="New", created_at=now - timedelta(hours=1))
    donation_factory(title="Gone off", expiry_time=now - timedelta(minutes=5))

    titles = [d.title for d in donation_store.find_available(10)]

    assert titles == ["New", "Old"]
    assert [d.title for d in donation_store.find_by_status("expired", 10)] == ["Gone off"]


def test_expire_stale_marks_only_past_expiry(stores, donation_factory):
    donation_store, _ = stores
    fresh = donation_factory(title="Fresh")
    stale = donation_factory(title="Stale", expiry_time=utcnow() - timedelta(hours=1))

    assert donation_store.expire_stale() == 1
    assert donation_store.find_by_id(stale.id).status == "expired"
    assert donation_store.find_by_id(fresh.id).status == "available"


def test_driver_failure_becomes_store_unavailable(stores, monkeypatch):
    donation_store, _ = stores

    def _down(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(db.session, "scalars", _down)

    with pytest.raises(StoreUnavailableError):
        donation_store.find_available(10)
