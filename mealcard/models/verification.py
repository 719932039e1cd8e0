"""
Verification Ledger — meal_verifications + verification_attempts
Record status: verified | failed
Attempt outcome: granted | denied
"""

from datetime import datetime, timezone
from mealcard.extensions import db

MEAL_TYPES = ("breakfast", "lunch", "dinner")

STATUS_VERIFIED = "verified"
STATUS_FAILED = "failed"
RECORD_STATUSES = (STATUS_VERIFIED, STATUS_FAILED)


def as_utc(value):
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VerificationRecord(db.Model):
    __tablename__ = "meal_verifications"
    __table_args__ = (
        db.UniqueConstraint("token", "meal_type", "service_date", name="uq_meal_verification_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), nullable=False, index=True)
    meal_type = db.Column(db.String(16), nullable=False)
    service_date = db.Column(db.Date, nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False)
    # Set once when the meal is granted; survives a replay downgrade
    served_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    @property
    def key(self):
        return (self.token, self.meal_type, self.service_date)

    def to_dict(self):
        return {
            "token":       self.token,
            "mealType":    self.meal_type,
            "date":        self.service_date.isoformat(),
            "status":      self.status,
            "timestamp":   as_utc(self.timestamp).isoformat(),
            "servedAt":    as_utc(self.served_at).isoformat() if self.served_at else None,
        }


class VerificationAttempt(db.Model):
    """Append-only audit row, one per decided verification request."""

    __tablename__ = "verification_attempts"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), nullable=False, index=True)
    meal_type = db.Column(db.String(16), nullable=False)
    service_date = db.Column(db.Date, nullable=False)
    outcome = db.Column(db.String(16), nullable=False)
    reason = db.Column(db.String(32), nullable=True)
    attempted_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self):
        return {
            "token":       self.token,
            "mealType":    self.meal_type,
            "date":        self.service_date.isoformat(),
            "outcome":     self.outcome,
            "reason":      self.reason,
            "attemptedAt": as_utc(self.attempted_at).isoformat(),
        }
