"""Staff-to-location assignment, with or without the membership join table."""
from __future__ import annotations

import logging

from sqlalchemy import inspect, or_
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Staff, StaffMembership

logger = logging.getLogger(__name__)

_membership_support: dict[str, bool] = {}


def supports_staff_memberships() -> bool:
    """Check once per database whether ``staff_memberships`` exists."""
    engine = db.engine
    cache_key = str(engine.url)
    if cache_key in _membership_support:
        return _membership_support[cache_key]
    try:
        supported = inspect(engine).has_table(StaffMembership.__tablename__)
    except SQLAlchemyError as exc:
        logger.warning("Membership table check failed: %s", exc)
        supported = False
    _membership_support[cache_key] = supported
    return supported


def reset_membership_check() -> None:
    _membership_support.clear()


def staff_for_location(location_id: int, *, active_only: bool = True) -> list[Staff]:
    """Staff working at ``location_id``: their home location or a membership."""
    query = Staff.query
    if supports_staff_memberships():
        member_ids = db.session.query(StaffMembership.staff_id).filter(
            StaffMembership.location_id == location_id
        )
        query = query.filter(or_(Staff.location_id == location_id, Staff.staff_id.in_(member_ids)))
    else:
        query = query.filter(Staff.location_id == location_id)
    if active_only:
        query = query.filter(Staff.status == "ACTIVE")
    return query.order_by(Staff.staff_id).all()


def staff_belongs_to_location(staff: Staff, location_id: int) -> bool:
    if staff.location_id == location_id:
        return True
    if not supports_staff_memberships():
        return False
    return (
        StaffMembership.query.filter_by(staff_id=staff.staff_id, location_id=location_id).first()
        is not None
    )
