from mealcard.extensions import db


class DenialEntry(db.Model):
    """
    Access-control entry owned by the administrative flow.
    The verification core only ever reads this table.
    """

    __tablename__ = "denied_students"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), nullable=False, index=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    reason = db.Column(db.Text)
    # Comma separated meal types; empty means every meal
    meal_types = db.Column(db.String(64), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    def covers(self, meal_type, on_date):
        if not self.active:
            return False
        meals = [m.strip().lower() for m in (self.meal_types or "").split(",") if m.strip()]
        if meals and meal_type not in meals:
            return False
        if self.start_date and on_date < self.start_date:
            return False
        if self.end_date and on_date > self.end_date:
            return False
        return True

    def to_dict(self):
        return {
            "token": self.token,
            "active": self.active,
            "reason": self.reason,
            "mealTypes": self.meal_types,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }
