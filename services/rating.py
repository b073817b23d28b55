import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking, BookingStatus
from models.rating import Rating, MIN_SCORE, MAX_SCORE, COMMENT_MAX_LEN
from services.errors import AlreadyRated, InvalidInput, RatingNotAllowed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewSummary:
    reviews: List[Rating]
    count: int
    average: Optional[float]


def validate_rating_input(data: dict):
    """Returns (score, comment) or raises InvalidInput."""
    errors = {}

    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
        errors["score"] = f"Rating must be a whole number from {MIN_SCORE} to {MAX_SCORE}"

    comment = data.get("comment")
    if comment is not None:
        if not isinstance(comment, str):
            errors["comment"] = "Comment must be text"
        elif len(comment.strip()) > COMMENT_MAX_LEN:
            errors["comment"] = f"Comment must be at most {COMMENT_MAX_LEN} characters"
        else:
            comment = comment.strip() or None

    if errors:
        raise InvalidInput(errors)
    return score, comment


def rate_booking(booking: Booking, score: int, comment: str = None) -> Rating:
    if booking.status != BookingStatus.DELIVERED:
        raise RatingNotAllowed()
    if booking.rating is not None:
        raise AlreadyRated(booking.id)

    rating = Rating(booking_id=booking.id, user_id=booking.user_id, score=score, comment=comment)
    db.session.add(rating)
    try:
        db.session.commit()
    except IntegrityError:
        # two submissions for the same booking; the unique booking_id keeps the first
        db.session.rollback()
        raise AlreadyRated(booking.id)

    logger.info("Booking %s rated %s by user %s", booking.id, score, booking.user_id)
    return rating


def list_reviews(limit: int = 100) -> ReviewSummary:
    count, average = db.session.query(func.count(Rating.id), func.avg(Rating.score)).one()
    reviews = Rating.query.order_by(Rating.created_at.desc(), Rating.id.desc()).limit(limit).all()
    return ReviewSummary(
        reviews=reviews,
        count=count,
        average=round(float(average), 1) if average is not None else None,
    )
