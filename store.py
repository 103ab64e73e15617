"""
Persistence collaborators for donations and users.

The stores are plain objects wrapping the Flask-SQLAlchemy handle. The app
factory builds them and hangs them on `app.extensions`; nothing here keeps
connection state of its own. Driver/connection failures and timeouts come
out as StoreUnavailableError so callers can tell "the database is down"
apart from "your request is wrong".
"""

import functools
import logging

from flask import current_app
from sqlalchemy import select, update, delete, func, or_, and_
from sqlalchemy.exc import DBAPIError, IntegrityError, TimeoutError as PoolTimeoutError

from errors import NotFoundError, StateConflictError, StoreUnavailableError, ValidationError
from models import Donation, User, utcnow, STATUS_AVAILABLE, STATUS_EXPIRED

logger = logging.getLogger(__name__)

CANDIDATE_CAP = 1000


def _guarded(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except IntegrityError:
            self.db.session.rollback()
            raise
        except (DBAPIError, PoolTimeoutError) as e:
            self.db.session.rollback()
            logger.error(f"❌ Store call {method.__name__} failed: {e}")
            raise StoreUnavailableError('The donation store is temporarily unavailable.') from e
    return wrapper


def _stale_state(donation):
    return StateConflictError('Donation changed while your request was being processed.')


class DonationStore:
    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    def _newest_first(self, stmt, limit):
        stmt = stmt.order_by(Donation.created_at.desc(), Donation.id.desc())
        return list(self.session.scalars(stmt.limit(limit)))

    # ==========================================
    #  QUERIES
    # ==========================================
    @_guarded
    def find_available(self, limit=50):
        """Available and not yet past expiry, newest first."""
        stmt = select(Donation).where(
            Donation.status == STATUS_AVAILABLE,
            Donation.expiry_time > utcnow()
        )
        return self._newest_first(stmt, limit)

    @_guarded
    def find_by_status(self, status, limit=50):
        if status == STATUS_AVAILABLE:
            return self.find_available(limit)

        if status == STATUS_EXPIRED:
            # Expiry is mostly derived; the sweep may not have run yet
            stmt = select(Donation).where(or_(
                Donation.status == STATUS_EXPIRED,
                and_(Donation.status == STATUS_AVAILABLE, Donation.expiry_time <= utcnow())
            ))
        else:
            stmt = select(Donation).where(Donation.status == status)
        return self._newest_first(stmt, limit)

    @_guarded
    def find_by_donor(self, donor_id, limit=50):
        return self._newest_first(select(Donation).where(Donation.donor_id == donor_id), limit)

    @_guarded
    def find_by_claimed_by(self, user_id, limit=50):
        return self._newest_first(select(Donation).where(Donation.claimed_by == user_id), limit)

    @_guarded
    def find_all(self, limit=1000):
        return self._newest_first(select(Donation), limit)

    @_guarded
    def find_by_id(self, donation_id):
        # populate_existing: always re-read, never trust the identity map
        return self.session.get(Donation, donation_id, populate_existing=True)

    # ==========================================
    #  WRITES
    # ==========================================
    @_guarded
    def add(self, donation):
        self.session.add(donation)
        self.session.commit()
        return donation

    @_guarded
    def save(self, donation):
        self.session.commit()
        return donation

    @_guarded
    def persist_transition(self, donation_id, expected_status, fields,
                           expected_claimed_by=None, not_expired_at=None, on_conflict=None):
        """
        Compare-and-set status transition.

        A single conditional UPDATE: it only touches the row if it is still in
        `expected_status` (and, when given, still held by `expected_claimed_by`
        and not past expiry at `not_expired_at`). When nothing matched, the
        current row is re-read and handed to `on_conflict` to build the error.
        """
        stmt = update(Donation).where(
            Donation.id == donation_id,
            Donation.status == expected_status
        )
        if expected_claimed_by is not None:
            stmt = stmt.where(Donation.claimed_by == expected_claimed_by)
        if not_expired_at is not None:
            stmt = stmt.where(Donation.expiry_time > not_expired_at)

        values = dict(fields)
        values['updated_at'] = utcnow()
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = self.session.execute(stmt)
        if result.rowcount != 1:
            self.session.rollback()
            current = self.session.get(Donation, donation_id, populate_existing=True)
            if current is None:
                raise NotFoundError('Donation not found')
            raise (on_conflict or _stale_state)(current)

        self.session.commit()
        return self.session.get(Donation, donation_id, populate_existing=True)

    @_guarded
    def delete_if_status(self, donation_id, statuses, on_conflict=None):
        stmt = delete(Donation).where(
            Donation.id == donation_id,
            Donation.status.in_(statuses)
        ).execution_options(synchronize_session=False)

        result = self.session.execute(stmt)
        if result.rowcount != 1:
            self.session.rollback()
            current = self.session.get(Donation, donation_id, populate_existing=True)
            if current is None:
                raise NotFoundError('Donation not found')
            raise (on_conflict or _stale_state)(current)

        self.session.commit()

    @_guarded
    def expire_stale(self, now=None):
        """Persists the derived 'expired' status. Returns how many rows moved."""
        now = now or utcnow()
        stmt = update(Donation).where(
            Donation.status == STATUS_AVAILABLE,
            Donation.expiry_time <= now
        ).values(status=STATUS_EXPIRED, updated_at=now).execution_options(synchronize_session=False)

        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount

    def close(self):
        self.session.remove()


class UserStore:
    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    @_guarded
    def find_by_id(self, user_id):
        return self.session.get(User, user_id, populate_existing=True)

    @_guarded
    def find_by_email(self, email):
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        return self.session.scalars(stmt).first()

    @_guarded
    def add(self, user):
        try:
            self.session.add(user)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ValidationError('User with this email already exists',
                                  fields={'email': 'already registered'})
        return user

    @_guarded
    def save(self, user):
        self.session.commit()
        return user

    @_guarded
    def delete_with_donations(self, user):
        # Donations go with the donor through the relationship cascade
        self.session.delete(user)
        self.session.commit()


def donation_store():
    return current_app.extensions['donation_store']


def user_store():
    return current_app.extensions['user_store']
