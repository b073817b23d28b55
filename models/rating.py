from datetime import datetime
from models.db import db

MIN_SCORE = 1
MAX_SCORE = 5
COMMENT_MAX_LEN = 500


class Rating(db.Model):
    """Customer feedback on a delivered booking; at most one per booking."""

    __tablename__ = "ratings"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    score = db.Column(db.Integer, nullable=False)  # 1..5 stars
    comment = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    booking = db.relationship("Booking", back_populates="rating")
    user = db.relationship("User")

    __table_args__ = (
        db.CheckConstraint("score >= 1 AND score <= 5", name="ck_rating_score_range"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "score": self.score,
            "comment": self.comment,
            "customer_name": self.user.full_name if self.user else None,
            "created_at": self.created_at.isoformat(),
        }
