import logging
from datetime import datetime, timezone
from flask import request
from flask_jwt_extended import get_jwt_identity
from flask_mail import Message
from extensions import mail
from errors import AuthenticationError, ValidationError
from models import AuditLog, db
from store import user_store

logger = logging.getLogger(__name__)


def log_activity(user_id, action, details):
    try:
        new_log = AuditLog(user_id=user_id, action=action, details=details[:255])
        db.session.add(new_log)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.warning(f"⚠️ Audit logging failed: {e}")  # Never fail the request over the audit trail


def json_body():
    """The request's JSON object. An empty body counts as {}; any other shape is rejected."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object', fields={'body': 'must be an object'})
    return data


def string_field(data, field):
    """Returns data[field] if it is a string (or missing -> None)."""
    value = data.get(field)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f'{field} must be a string', fields={field: 'must be a string'})
    return value


def parse_datetime(value, field):
    """ISO 8601 in, naive UTC out. A trailing 'Z' is accepted."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError(f'Invalid date for {field}. Use ISO 8601.',
                                  fields={field: 'invalid ISO 8601 timestamp'})

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def current_user():
    """Loads the JWT holder fresh from the user store. Inactive accounts are rejected."""
    identity = get_jwt_identity()
    if identity is None:
        return None

    try:
        user = user_store().find_by_id(int(identity))
    except (TypeError, ValueError):
        user = None

    if not user or not user.is_active:
        raise AuthenticationError('Invalid token')
    return user


def send_claim_notice(donation, ngo_name):
    """Best-effort e-mail to the donor. A mail failure never undoes the claim."""
    donor = donation.donor
    if donor is None or not donor.email:
        return

    msg = Message(f"Someone claimed your food: {donation.title}",
                  recipients=[donor.email])
    msg.body = f"""Hello {donor.display_name},

{ngo_name} just claimed your donation "{donation.title}" ({donation.quantity}).

Pickup address: {donation.address}

They will confirm once the food has been picked up.
"""
    try:
        mail.send(msg)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send claim notice to {donor.email}: {e}")
