import enum
from datetime import datetime

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.orm import validates

from models.db import db
from services.errors import CorrelationAlreadyAssigned


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    CONFIRMED = "CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    DELIVERED = "DELIVERED"


# Statuses that hold the (date, slot) pair against other customers
BLOCKING_STATUSES = frozenset({
    BookingStatus.PAYMENT_INITIATED,
    BookingStatus.CONFIRMED,
    BookingStatus.DELIVERED,
})

DELETABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.PAYMENT_FAILED})

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.PAYMENT_INITIATED, BookingStatus.PAYMENT_FAILED}),
    BookingStatus.PAYMENT_INITIATED: frozenset({BookingStatus.CONFIRMED, BookingStatus.PAYMENT_FAILED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.DELIVERED, BookingStatus.PAYMENT_FAILED}),
    BookingStatus.PAYMENT_FAILED: frozenset(),
    BookingStatus.DELIVERED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def charge_for(litres: int) -> int:
    rate = current_app.config.get("PRICE_PER_LITRE", 2)
    return int(litres) * int(rate)


_BLOCKING_SQL = "status IN ({})".format(
    ", ".join("'{}'".format(s.value) for s in sorted(BLOCKING_STATUSES, key=lambda s: s.value))
)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    booking_date = db.Column(db.Date, nullable=False, index=True)
    time_slot = db.Column(db.String(5), nullable=False)  # "HH:MM", one of Config.TIME_SLOTS
    location = db.Column(db.String(255), nullable=False)
    litres = db.Column(db.Integer, nullable=False)

    status = db.Column(
        db.Enum(BookingStatus, name="booking_status", native_enum=False, length=20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True,
    )

    # Daraja CheckoutRequestID: join key for the callback, written once
    checkout_request_id = db.Column(db.String(100), nullable=True, unique=True, index=True)

    mpesa_receipt_number = db.Column(db.String(50), nullable=True)
    payment_phone = db.Column(db.String(30), nullable=True)
    payment_date = db.Column(db.DateTime, nullable=True)  # UTC
    payment_error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = db.relationship("User")
    rating = db.relationship("Rating", uselist=False, back_populates="booking")

    __table_args__ = (
        db.CheckConstraint("litres >= 100 AND litres <= 50000", name="ck_booking_litres_range"),
        # Hard business-rule: one blocking booking per date+slot (prevents double booking)
        db.Index(
            "uq_booking_slot_blocking",
            "booking_date",
            "time_slot",
            unique=True,
            sqlite_where=db.text(_BLOCKING_SQL),
            postgresql_where=db.text(_BLOCKING_SQL),
        ),
    )

    @validates("checkout_request_id")
    def _validate_checkout_request_id(self, key, value):
        if self.checkout_request_id is not None and value != self.checkout_request_id:
            raise CorrelationAlreadyAssigned(self.id, self.checkout_request_id)
        return value

    @property
    def amount(self) -> int:
        return charge_for(self.litres)

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "booking_date": self.booking_date.isoformat(),
            "time_slot": self.time_slot,
            "location": self.location,
            "litres": self.litres,
            "amount": self.amount,
            "status": self.status.value,
            "checkout_request_id": self.checkout_request_id,
            "mpesa_receipt_number": self.mpesa_receipt_number,
            "payment_phone": self.payment_phone,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "payment_error": self.payment_error,
            "rated": self.rating is not None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def compare_and_set(cls, booking_id, expected, **values) -> bool:
        """
        UPDATE bookings SET ... WHERE id = :id AND status IN :expected.

        Returns False when another handler moved the booking first. The caller
        owns the commit/rollback.
        """
        if isinstance(expected, BookingStatus):
            expected = {expected}
        q = cls.query.filter(cls.id == booking_id, cls.status.in_(list(expected)))
        if "checkout_request_id" in values:
            # correlation id may be written once, never replaced
            q = q.filter(or_(
                cls.checkout_request_id.is_(None),
                cls.checkout_request_id == values["checkout_request_id"],
            ))
        values.setdefault("updated_at", datetime.utcnow())
        return q.update(values, synchronize_session=False) == 1
