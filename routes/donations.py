from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from errors import AuthorizationError, NotFoundError, StoreUnavailableError, ValidationError
from geo import parse_coordinates, rank_within_radius
from lifecycle import (NgoActor, actor_for, claim, create_donation, delete_donation,
                       mark_picked, update_donation)
from models import STATUSES, STATUS_AVAILABLE, STATUS_CLAIMED, STATUS_PICKED, STATUS_EXPIRED
from search import expand_search
from store import CANDIDATE_CAP, donation_store
from utils import current_user, json_body, log_activity, send_claim_notice

donations_bp = Blueprint('donations', __name__)


def _limit():
    try:
        limit = int(request.args.get('limit', 50))
    except ValueError:
        raise ValidationError('limit must be an integer', fields={'limit': 'must be an integer'})
    if limit < 1:
        raise ValidationError('limit must be positive', fields={'limit': 'must be >= 1'})
    return min(limit, current_app.config['MAX_LIST_LIMIT'])


def _int_arg(name):
    try:
        return int(request.args[name])
    except ValueError:
        raise ValidationError(f'{name} must be an integer', fields={name: 'must be an integer'})


def _serialize(ranked):
    return [donation.to_dict(distance_km=distance) for donation, distance in ranked]


def _discover_for_ngo(store, actor, limit):
    """
    Radius expansion around the NGO's stored location.
    Degrades to the plain available list if the store fails mid-search.
    """
    try:
        result = expand_search(store, actor.center, actor.operational_radius_km,
                               limit=limit, step_km=current_app.config['SEARCH_STEP_KM'])
    except StoreUnavailableError:
        current_app.logger.warning("⚠️ Proximity search failed, falling back to unfiltered donations")
        return [(d, None) for d in store.find_available(limit)], False, None

    return result.ranked, result.filtered_by_location, result.radius_km


# ==========================================
#  1. LIST / DISCOVER DONATIONS
# ==========================================
@donations_bp.route('/api/donations', methods=['GET'])
@jwt_required(optional=True)
def get_donations():
    """
    NGOs get donations around their own location, nearest first.
    Everyone else gets the status/donor/claimant filters, newest first.
    """
    user = current_user()
    actor = actor_for(user) if user else None
    limit = _limit()
    store = donation_store()

    filtered_by_location = False
    search_radius_km = None

    if isinstance(actor, NgoActor):
        ranked, filtered_by_location, search_radius_km = _discover_for_ngo(store, actor, limit)
    else:
        status = request.args.get('status')
        if status:
            if status not in STATUSES:
                raise ValidationError(f'Unknown status: {status}', fields={'status': f'must be one of {", ".join(STATUSES)}'})
            donations = store.find_by_status(status, limit)
        elif 'donor_id' in request.args:
            donations = store.find_by_donor(_int_arg('donor_id'), limit)
        elif 'claimed_by' in request.args:
            donations = store.find_by_claimed_by(_int_arg('claimed_by'), limit)
        else:
            donations = store.find_available(limit)
        ranked = [(d, None) for d in donations]

    return jsonify({
        'success': True,
        'donations': _serialize(ranked),
        'metadata': {
            'total_count': len(ranked),
            'filtered_by_location': filtered_by_location,
            'search_radius_km': search_radius_km,
            'user_role': user.role if user else None
        }
    }), 200


@donations_bp.route('/api/donations/location', methods=['GET'])
def get_donations_by_location():
    """ Map view: plain radius filter around a caller-supplied point. No expansion. """
    center = parse_coordinates(request.args.get('lat'), request.args.get('lng'), field='lat/lng')
    if center is None:
        raise ValidationError('Latitude and longitude are required',
                              fields={'lat': 'required', 'lng': 'required'})

    try:
        radius = float(request.args.get('radius', current_app.config['DEFAULT_LOCATION_RADIUS_KM']))
    except ValueError:
        raise ValidationError('radius must be a number', fields={'radius': 'must be a number'})
    if radius < 0:
        raise ValidationError('radius must not be negative', fields={'radius': 'must be >= 0'})

    candidates = donation_store().find_available(CANDIDATE_CAP)
    ranked = rank_within_radius(candidates, center, radius)

    return jsonify({
        'success': True,
        'donations': _serialize(ranked),
        'metadata': {'total_count': len(ranked), 'radius_km': radius}
    }), 200


@donations_bp.route('/api/donations/stats', methods=['GET'])
def get_donation_stats():
    all_donations = donation_store().find_all(1000)

    stats = {
        'total': len(all_donations),
        'available': len([d for d in all_donations if d.effective_status == STATUS_AVAILABLE]),
        'claimed': len([d for d in all_donations if d.status == STATUS_CLAIMED]),
        'picked': len([d for d in all_donations if d.status == STATUS_PICKED]),
        'expired': len([d for d in all_donations if d.effective_status == STATUS_EXPIRED]),
        'by_food_type': {}
    }
    for d in all_donations:
        stats['by_food_type'][d.food_type] = stats['by_food_type'].get(d.food_type, 0) + 1

    return jsonify({'success': True, 'stats': stats}), 200


@donations_bp.route('/api/donations/<int:donation_id>', methods=['GET'])
@jwt_required()
def get_single_donation(donation_id):
    current_user()
    donation = donation_store().find_by_id(donation_id)
    if not donation:
        raise NotFoundError('Donation not found')

    return jsonify({'success': True, 'donation': donation.to_dict()}), 200


@donations_bp.route('/api/donations/ngo/my-donations', methods=['GET'])
@jwt_required()
def get_my_claimed_donations():
    actor = actor_for(current_user())
    if not isinstance(actor, NgoActor):
        raise AuthorizationError('Only NGOs have claimed donations.', code='ROLE_NOT_ALLOWED')

    donations = donation_store().find_by_claimed_by(actor.user_id, _limit())
    return jsonify({'success': True, 'donations': [d.to_dict() for d in donations]}), 200


# ==========================================
#  2. CREATE / UPDATE / DELETE
# ==========================================
@donations_bp.route('/api/donations', methods=['POST'])
@jwt_required()
def post_donation():
    actor = actor_for(current_user())
    donation = create_donation(donation_store(), actor, json_body())

    log_activity(actor.user_id, "POST_DONATION", f"Posted {donation.title} ({donation.quantity})")
    current_app.logger.info(f"🍱 Donation {donation.id} posted by {actor.user_id}")

    return jsonify({'success': True, 'donation': donation.to_dict()}), 201


@donations_bp.route('/api/donations/<int:donation_id>', methods=['PUT'])
@jwt_required()
def put_donation(donation_id):
    actor = actor_for(current_user())
    donation = update_donation(donation_store(), donation_id, actor, json_body())

    log_activity(actor.user_id, "UPDATE_DONATION", f"Updated {donation.title}")
    return jsonify({'success': True, 'donation': donation.to_dict()}), 200


@donations_bp.route('/api/donations/<int:donation_id>', methods=['DELETE'])
@jwt_required()
def remove_donation(donation_id):
    actor = actor_for(current_user())
    title = delete_donation(donation_store(), donation_id, actor)

    log_activity(actor.user_id, "DELETE_DONATION", f"Deleted {title}")
    return jsonify({'success': True, 'message': 'Donation deleted successfully'}), 200


# ==========================================
#  3. CLAIM & PICKUP
# ==========================================
@donations_bp.route('/api/donations/<int:donation_id>/claim', methods=['POST'])
@jwt_required()
def claim_donation(donation_id):
    actor = actor_for(current_user())
    result = claim(donation_store(), donation_id, actor)
    donation = result.donation

    log_activity(actor.user_id, "CLAIM_DONATION", f"Claimed {donation.title}")
    send_claim_notice(donation, actor.display_name)

    return jsonify({
        'success': True,
        'message': 'Claim successful!',
        'donation': donation.to_dict(distance_km=result.distance_km),
        'distance_km': round(result.distance_km, 2) if result.distance_km is not None else None
    }), 200


@donations_bp.route('/api/donations/<int:donation_id>/pickup', methods=['POST'])
@jwt_required()
def pickup_donation(donation_id):
    actor = actor_for(current_user())
    donation = mark_picked(donation_store(), donation_id, actor)

    log_activity(actor.user_id, "PICKUP_DONATION", f"Picked up {donation.title}")
    return jsonify({'success': True, 'donation': donation.to_dict()}), 200
