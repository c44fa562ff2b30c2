"""Database models for the salon booking backend."""
from __future__ import annotations

from .extensions import db
from .timeutil import ensure_utc, to_iso, utc_now

APPOINTMENT_STATUSES = ("PENDING", "CONFIRMED", "CANCELLED", "COMPLETED", "NO_SHOW")
PAYMENT_STATUSES = (
    "UNPAID",
    "DEPOSIT_DUE",
    "AUTHORIZED",
    "PAID",
    "REFUNDED",
    "PARTIALLY_REFUNDED",
)
WEEKDAYS = ("SUNDAY", "MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY")
CONSENT_TYPES = ("TERMS", "PRIVACY", "COMMUNICATION", "MARKETING")
CONSENT_SCOPES = ("GENERAL", "EMAIL", "SMS", "WHATSAPP")


def _iso(value) -> str | None:
    return to_iso(value) if value else None


class Location(db.Model):
    """A bookable salon location belonging to a tenant."""

    __tablename__ = "locations"
    __table_args__ = (db.UniqueConstraint("tenant_id", "slug", name="uq_locations_tenant_slug"),)

    location_id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False)
    slug = db.Column(db.String(100), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    timezone = db.Column(db.String(64), nullable=False, default="Europe/Berlin")
    address_line1 = db.Column(db.String(255))
    city = db.Column(db.String(100))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(30))
    # bookingPreferences and other per-location settings
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.location_id,
            "tenant_id": self.tenant_id,
            "slug": self.slug,
            "name": self.name,
            "timezone": self.timezone,
            "address_line1": self.address_line1,
            "city": self.city,
            "email": self.email,
            "phone": self.phone,
        }


class Staff(db.Model):
    __tablename__ = "staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100))
    display_name = db.Column(db.String(150))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(30))
    # External employee id (shift planning system)
    code = db.Column(db.String(64))
    status = db.Column(
        db.Enum(
            "ACTIVE",
            "INACTIVE",
            name="staff_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="ACTIVE",
        default="ACTIVE",
    )
    pin_hash = db.Column(db.String(255))
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    location = db.relationship("Location")

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.staff_id,
            "location_id": self.location_id,
            "name": self.name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "status": self.status,
        }


class StaffMembership(db.Model):
    """Assignment of a staff member to an additional location."""

    __tablename__ = "staff_memberships"

    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), primary_key=True)
    role = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    staff = db.relationship("Staff")
    location = db.relationship("Location")


class Customer(db.Model):
    __tablename__ = "customers"

    customer_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(30))
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.customer_id,
            "location_id": self.location_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
        }


class Consent(db.Model):
    """Granted/revoked consent history for a customer."""

    __tablename__ = "consents"

    consent_id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.customer_id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    type = db.Column(
        db.Enum(*CONSENT_TYPES, name="consent_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    scope = db.Column(
        db.Enum(*CONSENT_SCOPES, name="consent_scope", native_enum=False, validate_strings=True),
        nullable=False,
        default="GENERAL",
    )
    granted = db.Column(db.Boolean, nullable=False, default=True)
    granted_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    revoked_at = db.Column(db.DateTime)
    source = db.Column(db.String(50))
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    customer = db.relationship("Customer")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.consent_id,
            "customer_id": self.customer_id,
            "location_id": self.location_id,
            "type": self.type,
            "scope": self.scope,
            "granted": self.granted,
            "granted_at": _iso(self.granted_at),
            "revoked_at": _iso(self.revoked_at),
            "source": self.source,
            "metadata": self.meta or {},
        }


class Resource(db.Model):
    """Chairs, basins and rooms that service steps may require."""

    __tablename__ = "resources"

    resource_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(db.String(50), nullable=False)
    capacity = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)


class Service(db.Model):
    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    duration_minutes = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    buffer_before = db.Column(db.Integer, nullable=False, default=0)
    buffer_after = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # onlineBookable, assignedStaffIds
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    steps = db.relationship(
        "ServiceStep",
        order_by="ServiceStep.position",
        cascade="all, delete-orphan",
        back_populates="service",
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "location_id": self.location_id,
            "name": self.name,
            "description": self.description,
            "duration_minutes": self.duration_minutes,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
        }


class ServiceStep(db.Model):
    __tablename__ = "service_steps"

    step_id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    name = db.Column(db.String(150), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    # 0 means the step runs without staff (e.g. colour processing)
    min_staff = db.Column(db.Integer, nullable=False, default=1)
    allowed_staff_ids = db.Column(db.JSON, nullable=True)

    service = db.relationship("Service", back_populates="steps")
    resources = db.relationship("ServiceStepResource", cascade="all, delete-orphan")


class ServiceStepResource(db.Model):
    __tablename__ = "service_step_resources"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(db.Integer, db.ForeignKey("service_steps.step_id"), nullable=False)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.resource_id"), nullable=True)
    resource_type = db.Column(db.String(50))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    optional = db.Column(db.Boolean, nullable=False, default=False)


class Schedule(db.Model):
    """Opening hours or working hours for a location, staff member or resource."""

    __tablename__ = "schedules"

    schedule_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    owner_type = db.Column(
        db.Enum(
            "LOCATION",
            "STAFF",
            "RESOURCE",
            name="schedule_owner_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.resource_id"), nullable=True)
    name = db.Column(db.String(100))
    timezone = db.Column(db.String(64), nullable=False, default="Europe/Berlin")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    rules = db.relationship("ScheduleRule", cascade="all, delete-orphan", back_populates="schedule")


class ScheduleRule(db.Model):
    __tablename__ = "schedule_rules"

    rule_id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey("schedules.schedule_id"), nullable=False)
    rule_type = db.Column(
        db.Enum("WEEKLY", "DATE", name="schedule_rule_type", native_enum=False, validate_strings=True),
        nullable=False,
        default="WEEKLY",
    )
    weekday = db.Column(
        db.Enum(*WEEKDAYS, name="weekday", native_enum=False, validate_strings=True),
        nullable=True,
    )
    start_minute = db.Column(db.Integer, nullable=False)
    end_minute = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.DateTime)
    effective_to = db.Column(db.DateTime)

    schedule = db.relationship("Schedule", back_populates="rules")


class TimeOff(db.Model):
    __tablename__ = "time_offs"

    time_off_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.resource_id"), nullable=True)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class AvailabilityException(db.Model):
    """One-off closure (BLOCK) or extra opening (OPEN)."""

    __tablename__ = "availability_exceptions"

    exception_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.resource_id"), nullable=True)
    type = db.Column(
        db.Enum("BLOCK", "OPEN", name="availability_exception_type", native_enum=False, validate_strings=True),
        nullable=False,
        default="BLOCK",
    )
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class Appointment(db.Model):
    """A customer booking made of one or more items."""

    __tablename__ = "appointments"
    __table_args__ = (
        db.UniqueConstraint("location_id", "idempotency_key", name="uq_appointments_idempotency"),
    )

    appointment_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.customer_id"), nullable=True)
    confirmation_code = db.Column(db.String(12), nullable=False)
    idempotency_key = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.Enum(
            *APPOINTMENT_STATUSES,
            name="appointment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="PENDING",
        default="PENDING",
    )
    payment_status = db.Column(
        db.Enum(
            *PAYMENT_STATUSES,
            name="payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="UNPAID",
        default="UNPAID",
    )
    source = db.Column(db.String(30), nullable=False, default="ONLINE")
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    notes = db.Column(db.Text)
    # booking, paymentHistory, bookingChannels
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    location = db.relationship("Location")
    customer = db.relationship("Customer")
    items = db.relationship(
        "AppointmentItem",
        order_by="AppointmentItem.starts_at",
        cascade="all, delete-orphan",
        back_populates="appointment",
    )

    def refresh_time_range(self) -> None:
        """Derive starts_at/ends_at from the items; an appointment needs at least one."""
        if not self.items:
            raise ValueError("appointment requires at least one item")
        self.starts_at = min(ensure_utc(item.starts_at) for item in self.items)
        self.ends_at = max(ensure_utc(item.ends_at) for item in self.items)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.appointment_id,
            "location_id": self.location_id,
            "customer": self.customer.to_dict() if self.customer else None,
            "confirmation_code": self.confirmation_code,
            "status": self.status,
            "payment_status": self.payment_status,
            "source": self.source,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "total_cents": self.total_cents,
            "currency": self.currency,
            "notes": self.notes,
            "metadata": self.meta or {},
            "items": [item.to_dict() for item in self.items],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AppointmentItem(db.Model):
    __tablename__ = "appointment_items"

    item_id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.resource_id"), nullable=True)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(
        db.Enum(
            "SCHEDULED",
            "CANCELLED",
            "COMPLETED",
            name="appointment_item_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="SCHEDULED",
    )
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)

    appointment = db.relationship("Appointment", back_populates="items")
    service = db.relationship("Service")
    staff = db.relationship("Staff")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.item_id,
            "service_id": self.service_id,
            "service_name": self.service.name if self.service else None,
            "staff_id": self.staff_id,
            "staff_name": self.staff.name if self.staff else None,
            "resource_id": self.resource_id,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "status": self.status,
            "price_cents": self.price_cents,
            "currency": self.currency,
        }


class BookingSlotClaim(db.Model):
    """Short-lived exclusive claim on a computed slot while a checkout runs."""

    __tablename__ = "booking_slot_claims"
    __table_args__ = (
        db.UniqueConstraint("location_id", "slot_key", name="uq_booking_slot_claims_location_slot"),
    )

    claim_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    slot_key = db.Column(db.String(255), nullable=False)
    status = db.Column(
        db.Enum("HELD", name="booking_slot_claim_status", native_enum=False, validate_strings=True),
        nullable=False,
        default="HELD",
    )
    idempotency_key = db.Column(db.String(255))
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class NotificationLog(db.Model):
    """Record of every outbound email/SMS/WhatsApp dispatch attempt."""

    __tablename__ = "notification_logs"

    log_id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=True)
    channel = db.Column(
        db.Enum("EMAIL", "SMS", "WHATSAPP", name="notification_channel", native_enum=False, validate_strings=True),
        nullable=False,
    )
    template = db.Column(db.String(100), nullable=False)
    recipient = db.Column(db.String(255), nullable=False)
    status = db.Column(
        db.Enum("SENT", "FAILED", "SKIPPED", name="notification_status", native_enum=False, validate_strings=True),
        nullable=False,
    )
    error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.log_id,
            "appointment_id": self.appointment_id,
            "channel": self.channel,
            "template": self.template,
            "recipient": self.recipient,
            "status": self.status,
            "error": self.error,
            "created_at": _iso(self.created_at),
        }
