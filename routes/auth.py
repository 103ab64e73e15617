import math
from flask import Blueprint, jsonify, current_app
from flask_jwt_extended import create_access_token, jwt_required
from errors import AuthenticationError, AuthorizationError, ValidationError
from geo import MAX_DISTANCE_KM, parse_coordinates
from models import User, ROLES, ROLE_DONOR, ROLE_NGO, STATUS_AVAILABLE, STATUS_CLAIMED, STATUS_PICKED
from store import donation_store, user_store
from utils import current_user, json_body, log_activity, string_field

auth_bp = Blueprint('auth', __name__)

MIN_PASSWORD_LENGTH = 6


def _issue_token(user):
    # Role travels in the token for the frontend; the server always re-reads it
    return create_access_token(identity=str(user.id), additional_claims={"role": user.role})


def _location_fields(location):
    if location is None:
        return {'address': None, 'latitude': None, 'longitude': None}
    if not isinstance(location, dict):
        raise ValidationError('Location must be an object', fields={'location': 'must be an object'})

    raw = location.get('coordinates')
    if not isinstance(raw, dict):
        raw = location
    coords = parse_coordinates(raw.get('lat'), raw.get('lng'))

    return {
        'address': string_field(location, 'address') or None,
        'latitude': coords.lat if coords else None,
        'longitude': coords.lng if coords else None
    }


def _ngo_fields(details):
    if not isinstance(details, dict):
        raise ValidationError('ngo_details must be an object', fields={'ngo_details': 'must be an object'})

    fields = {}
    if 'description' in details: fields['ngo_description'] = string_field(details, 'description')
    if 'contact_email' in details: fields['contact_email'] = string_field(details, 'contact_email')
    if 'contact_phone' in details: fields['contact_phone'] = string_field(details, 'contact_phone')

    if 'operational_radius_km' in details:
        try:
            radius = float(details['operational_radius_km'])
        except (TypeError, ValueError):
            raise ValidationError('Operational radius must be a number',
                                  fields={'ngo_details.operational_radius_km': 'must be a number'})
        if not radius > 0:
            raise ValidationError('Operational radius must be positive',
                                  fields={'ngo_details.operational_radius_km': 'must be > 0'})
        if not math.isfinite(radius) or radius > MAX_DISTANCE_KM:
            raise ValidationError(f'Operational radius cannot exceed {MAX_DISTANCE_KM:.0f}km',
                                  fields={'ngo_details.operational_radius_km': f'must be <= {MAX_DISTANCE_KM:.0f}'})
        fields['operational_radius_km'] = radius
    return fields


# ==========================================
#  1. REGISTER & LOGIN
# ==========================================
@auth_bp.route('/api/auth/register', methods=['POST'])
def register():
    data = json_body()

    required_fields = ['email', 'password', 'display_name', 'role']
    for field in required_fields + ['photo_url']:
        string_field(data, field)
    missing = {field: 'required' for field in required_fields if not (data.get(field) or '').strip()}
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

    role = data['role'].lower()
    if role not in ROLES:
        raise ValidationError('Role must be either "donor" or "ngo"', fields={'role': 'must be donor or ngo'})

    if len(data['password']) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters',
                              fields={'password': 'too short'})

    email = data['email'].strip().lower()
    if user_store().find_by_email(email):
        raise ValidationError('User with this email already exists', fields={'email': 'already registered'})

    new_user = User(
        email=email,
        display_name=data['display_name'].strip(),
        role=role,
        photo_url=data.get('photo_url'),
        is_active=True
    )
    new_user.set_password(data['password'])

    fields = {}
    if data.get('location') is not None:
        fields.update(_location_fields(data['location']))
    if role == ROLE_NGO:
        fields['operational_radius_km'] = current_app.config['DEFAULT_OPERATIONAL_RADIUS_KM']
        if data.get('ngo_details') is not None:
            fields.update(_ngo_fields(data['ngo_details']))

    for attr, value in fields.items():
        setattr(new_user, attr, value)

    user_store().add(new_user)
    current_app.logger.info(f"👤 Registered {role} {new_user.id}")

    return jsonify({
        'success': True,
        'token': _issue_token(new_user),
        'user': new_user.to_dict()
    }), 201


@auth_bp.route('/api/auth/login', methods=['POST'])
def login():
    data = json_body()

    if not string_field(data, 'email') or not string_field(data, 'password'):
        raise ValidationError('Missing email or password',
                              fields={'email': 'required', 'password': 'required'})

    user = user_store().find_by_email(data['email'])
    if not user or not user.check_password(data['password']):
        raise AuthenticationError('Invalid credentials')

    if not user.is_active:
        raise AuthenticationError('Account is deactivated', code='ACCOUNT_DEACTIVATED')

    return jsonify({
        'success': True,
        'token': _issue_token(user),
        'user': user.to_dict()
    }), 200


# ==========================================
#  2. PROFILE
# ==========================================
@auth_bp.route('/api/auth/profile', methods=['GET'])
@jwt_required()
def get_profile():
    """ Refreshes user data on page reload. """
    return jsonify({'success': True, 'user': current_user().to_dict()}), 200


@auth_bp.route('/api/auth/profile', methods=['PUT'])
@jwt_required()
def update_profile():
    user = current_user()
    data = json_body()

    if 'role' in data and data['role'] != user.role:
        raise ValidationError('Role cannot be changed', fields={'role': 'read-only'})

    if 'ngo_details' in data and user.role != ROLE_NGO:
        raise AuthorizationError('Only NGOs have NGO details.', code='ROLE_NOT_ALLOWED')

    # Validate everything first so a bad field never leaves a half-edited user in the session
    changes = {}
    display_name = string_field(data, 'display_name')
    if display_name and display_name.strip(): changes['display_name'] = display_name.strip()
    if 'photo_url' in data: changes['photo_url'] = string_field(data, 'photo_url')
    if 'location' in data: changes.update(_location_fields(data['location']))
    if 'ngo_details' in data: changes.update(_ngo_fields(data['ngo_details']))

    for attr, value in changes.items():
        setattr(user, attr, value)

    user_store().save(user)
    return jsonify({'success': True, 'user': user.to_dict()}), 200


@auth_bp.route('/api/auth/change-password', methods=['PUT'])
@jwt_required()
def change_password():
    user = current_user()
    data = json_body()

    if not user.check_password(string_field(data, 'current_password') or ''):
        raise ValidationError('Current password is incorrect', fields={'current_password': 'incorrect'})

    new_password = string_field(data, 'new_password') or ''
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters',
                              fields={'new_password': 'too short'})

    user.set_password(new_password)
    user_store().save(user)
    return jsonify({'success': True, 'message': 'Password changed successfully'}), 200


@auth_bp.route('/api/auth/account', methods=['DELETE'])
@jwt_required()
def delete_account():
    user = current_user()
    user_id, role = user.id, user.role

    user_store().delete_with_donations(user)
    log_activity(None, "DELETE_ACCOUNT", f"{role} account {user_id} closed")

    return jsonify({'success': True, 'message': 'Account deleted successfully'}), 200


# ==========================================
#  3. STATS
# ==========================================
@auth_bp.route('/api/auth/stats', methods=['GET'])
@jwt_required()
def get_user_stats():
    user = current_user()
    store = donation_store()

    if user.role == ROLE_DONOR:
        donations = store.find_by_donor(user.id, limit=1000)
        stats = {
            'total_donations': len(donations),
            'available_donations': len([d for d in donations if d.effective_status == STATUS_AVAILABLE]),
            'claimed_donations': len([d for d in donations if d.status == STATUS_CLAIMED]),
            'completed_donations': len([d for d in donations if d.status == STATUS_PICKED])
        }
    else:
        claimed = store.find_by_claimed_by(user.id, limit=1000)
        stats = {
            'total_claims': len(claimed),
            'pending_claims': len([d for d in claimed if d.status == STATUS_CLAIMED]),
            'completed_claims': len([d for d in claimed if d.status == STATUS_PICKED]),
            'available_donations': len(store.find_available(limit=1000))
        }

    return jsonify({'success': True, 'stats': stats}), 200
