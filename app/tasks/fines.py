"""Periodic fine assessment for books that were not returned in time."""
import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.exceptions import ConfigurationError
from app.models.models import Booking, BookingState, Place, User

logger = logging.getLogger("library.tasks.fines")

# books delivered to the reading room are expected back the same day
READING_ROOM_ALLOWANCE = 1


def whole_days_between(start: datetime, end: datetime) -> int:
    return (end - start).days


class UpdateFineTask:
    """Adds fines for every unchecked overdue day of every delivered book.

    ``fine_last_checked`` only moves when a fine was actually added, so a
    second run right after a successful one finds nothing to charge.
    """

    name = "update_fine"

    def __init__(self, session_factory: sessionmaker,
                 clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.fine_per_day: Optional[float] = None
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    def init(self, fine_per_day) -> None:
        if fine_per_day is None or fine_per_day == "":
            raise ConfigurationError("fine_per_day is not specified")
        try:
            candidate = float(fine_per_day)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"fine_per_day should be a number, got {fine_per_day!r}") from exc
        if candidate <= 0:
            raise ConfigurationError(f"fine_per_day should be positive, got {candidate}")
        with self._lock:
            self.fine_per_day = candidate
        logger.info(f"Fine per day initialized: {candidate}")

    def configure(self, settings) -> None:
        self.init(settings.fine_per_day)

    def cancel(self) -> None:
        self._cancel.set()

    def run(self) -> None:
        logger.info("Fine update started")
        if self.fine_per_day is None:
            logger.critical("fine_per_day was not set, call init() before scheduling the task")
            return

        db: Session = self.session_factory()
        try:
            try:
                user_ids = [user_id for (user_id,) in db.query(User.id).order_by(User.id).all()]
            except SQLAlchemyError as exc:
                logger.error(f"Unable to get users list: {exc}")
                return

            for user_id in user_ids:
                if self._cancel.is_set():
                    logger.info("Fine update canceled")
                    return
                self._check_user(db, user_id)
        finally:
            db.close()
        logger.info("Fine update finished")

    def _check_user(self, db: Session, user_id: int) -> None:
        now = self.clock()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            if user is None:
                return
            bookings = (db.query(Booking)
                        .filter(Booking.user_id == user_id, Booking.state == BookingState.DELIVERED)
                        .all())
            delta = self.assess(user, bookings, now)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Unable to get booking list for user {user_id}: {exc}")
            return

        if delta == 0:
            return

        user.fine = user.fine + delta
        user.modified = now
        user.fine_last_checked = now
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Unable to update fine of user {user_id}: {exc}")
            return
        logger.info(f"User {user_id} fined {delta:.2f}")

    def assess(self, user: User, bookings, now: datetime) -> float:
        """Fine owed by ``user`` for ``bookings`` since the last check."""
        delta = 0.0
        for booking in bookings:
            window_start = max(booking.modified, user.fine_last_checked)
            past_days = whole_days_between(window_start, now)
            logger.debug(f"Booking {booking.id}: {past_days} unchecked days past")

            for book in booking.books:
                allowance = book.keep_period if booking.place == Place.USER else READING_ROOM_ALLOWANCE
                fine_days = past_days - allowance
                if fine_days > 0:
                    delta += fine_days * self.fine_per_day
                    logger.debug(f"Book {book.id} kept {fine_days} days too long")
        return delta
