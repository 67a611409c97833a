"""Booking lifecycle: lookup, permissions and state transitions.

A booking starts NEW. As long as it is NEW it usually lives only in the
user's session (``DraftBooking``); committing it ("book") writes it to the
database. Availability counters on ``Book`` are changed here and nowhere
else, always in the same transaction as the booking row:

    NEW -> BOOKED          reserved += 1
    NEW -> CANCELED        nothing
    BOOKED -> CANCELED     reserved -= 1
    BOOKED -> DELIVERED    reserved -= 1, in_stock -= 1
    DELIVERED -> DONE      in_stock += 1

so ``reserved`` always equals the number of BOOKED bookings holding the book.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import Forbidden, InvalidState, NotFound, PersistenceFailure
from app.core.session import DraftBooking, SessionStore
from app.models.models import Book, Booking, BookingState, Place, Role, User, UserState

logger = logging.getLogger("library.booking")

AnyBooking = Union[Booking, DraftBooking]

# (from, to) -> (reserved delta, in_stock delta) per member book
COUNTER_EFFECTS = {
    (BookingState.NEW, BookingState.BOOKED): (1, 0),
    (BookingState.NEW, BookingState.CANCELED): (0, 0),
    (BookingState.BOOKED, BookingState.CANCELED): (-1, 0),
    (BookingState.BOOKED, BookingState.DELIVERED): (-1, -1),
    (BookingState.DELIVERED, BookingState.DONE): (0, 1),
}

TRANSITIONS = {state: {to for (frm, to) in COUNTER_EFFECTS if frm == state} for state in BookingState}

PERMISSIONS = {
    "add_book": {Role.USER},
    "remove_book": {Role.USER},
    "commit": {Role.USER},
    "save": {Role.USER},
    "cancel": {Role.USER, Role.LIBRARIAN},
    "deliver": {Role.LIBRARIAN},
    "complete": {Role.LIBRARIAN},
    "find": {Role.LIBRARIAN},
    "basket": {Role.USER},
}

_STATE_ORDER = list(BookingState)


class BookingService:
    def __init__(self, db: Session, sessions: SessionStore, session_id: str,
                 clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.db = db
        self.sessions = sessions
        self.session_id = session_id
        self.clock = clock

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------
    def authorize(self, actor: User, action: str) -> None:
        if actor.role not in PERMISSIONS[action]:
            logger.info(f"User {actor.id} with role {actor.role.value} may not {action}")
            raise Forbidden(f"Role {actor.role.value} may not {action.replace('_', ' ')}")

    def find_booking(self, actor: User, booking_id: Optional[int] = None,
                     create: bool = False) -> AnyBooking:
        """Locate the booking an action applies to.

        Users work on their session booking unless they name one of their own
        stored bookings. Librarians always name a stored booking.
        """
        if actor.role == Role.USER:
            if booking_id is not None:
                booking = self.read_booking(booking_id)
                if booking.user_id != actor.id:
                    raise Forbidden("Booking belongs to another user")
                return booking
            booking = self._find_for_user(actor, create)
            if booking is None:
                raise NotFound("No current booking, add some books first")
            return booking

        if actor.role == Role.LIBRARIAN:
            if booking_id is None:
                raise NotFound("Booking id is required")
            return self.read_booking(booking_id)

        raise Forbidden(f"Role {actor.role.value} has no bookings")

    def _find_for_user(self, user: User, create: bool) -> Optional[AnyBooking]:
        draft = self.sessions.get_booking(self.session_id)
        if draft is not None:
            if draft.user_id != user.id:
                raise Forbidden("Session booking belongs to another user")
            logger.debug(f"Found booking in session {self.session_id}")
            return draft

        stored = self._stored_new_booking(user.id)
        if stored is not None:
            logger.debug(f"Found stored NEW booking {stored.id}")
            return stored

        if not create:
            return None

        if user.fine > 0 or user.state != UserState.VALID:
            logger.info(f"User {user.id} refused a new booking: fine={user.fine} state={user.state.value}")
            raise Forbidden("Pay outstanding fines before booking new books")

        draft = DraftBooking(user_id=user.id, modified=self.clock())
        holder = self.sessions.claim_booking(self.session_id, draft)
        if holder is not None:
            logger.info(f"User {user.id} already has a working booking in session {holder}")
            raise InvalidState("There is a working booking in another session already")
        logger.debug(f"Created session booking for user {user.id}")
        return draft

    def _stored_new_booking(self, user_id: int) -> Optional[Booking]:
        try:
            return (self.db.query(Booking)
                    .filter(Booking.user_id == user_id, Booking.state == BookingState.NEW)
                    .order_by(Booking.id)
                    .with_for_update()
                    .first())
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure(f"Unable to read bookings of user {user_id}") from exc

    def read_booking(self, booking_id: int) -> Booking:
        try:
            booking = (self.db.query(Booking)
                       .filter(Booking.id == booking_id)
                       .with_for_update()
                       .first())
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure(f"Unable to read booking {booking_id}") from exc
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    def read_book(self, book_id: int) -> Book:
        book = self.db.query(Book).filter(Book.id == book_id).first()
        if book is None:
            raise NotFound("Book not found")
        return book

    # ------------------------------------------------------------------
    # membership
    # ------------------------------------------------------------------
    def add_book(self, booking: AnyBooking, book_id: int) -> AnyBooking:
        self._require_new(booking, "add books to")
        book = self.read_book(book_id)
        if book.id in booking.book_ids:
            logger.debug(f"Book {book.id} already in booking")
            return booking

        if isinstance(booking, DraftBooking):
            booking.book_ids.append(book.id)
        else:
            with self._transaction():
                booking.books.append(book)
                # touch the row so the version check covers membership changes
                booking.modified = self.clock()
        logger.debug(f"Book {book.id} added, booking has {len(booking.book_ids)} books")
        return booking

    def remove_book(self, booking: AnyBooking, book_id: int) -> AnyBooking:
        self._require_new(booking, "remove books from")
        book = self.read_book(book_id)
        if book.id not in booking.book_ids:
            return booking

        if isinstance(booking, DraftBooking):
            booking.book_ids.remove(book.id)
        else:
            with self._transaction():
                booking.books.remove(book)
                booking.modified = self.clock()
        return booking

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def commit(self, booking: AnyBooking) -> Booking:
        """NEW -> BOOKED, writing a session booking to the database."""
        self._require_new(booking, "book")
        if not booking.book_ids:
            raise InvalidState("Add some books before booking")

        with self._transaction():
            stored = self._store(booking)
            self._apply(stored, BookingState.BOOKED)
        if isinstance(booking, DraftBooking):
            self.sessions.remove_booking(self.session_id)
        logger.info(f"Booking {stored.id} booked by user {stored.user_id}")
        return stored

    def save(self, booking: AnyBooking) -> Booking:
        """Write a session booking to the database, still NEW."""
        self._require_new(booking, "save")
        if not isinstance(booking, DraftBooking):
            return booking
        existing = self._stored_new_booking(booking.user_id)
        if existing is not None:
            raise InvalidState(f"Booking {existing.id} is already saved, add books to it instead")
        with self._transaction():
            stored = self._store(booking)
        self.sessions.remove_booking(self.session_id)
        logger.info(f"Booking {stored.id} saved by user {stored.user_id}")
        return stored

    def cancel(self, booking: AnyBooking) -> AnyBooking:
        if isinstance(booking, DraftBooking):
            # never written anywhere, forget it
            self._require_new(booking, "cancel")
            booking.book_ids = []
            booking.state = BookingState.CANCELED
            booking.modified = self.clock()
            self.sessions.remove_booking(self.session_id)
            logger.info(f"Session booking of user {booking.user_id} canceled")
            return booking

        with self._transaction():
            self._apply(booking, BookingState.CANCELED)
        logger.info(f"Booking {booking.id} canceled")
        return booking

    def deliver(self, booking: AnyBooking, subscription: bool = False) -> Booking:
        """BOOKED -> DELIVERED, to the reader (subscription) or the reading room."""
        self._require_stored(booking, "deliver")
        with self._transaction():
            self._apply(booking, BookingState.DELIVERED)
            booking.place = Place.USER if subscription else Place.LIBRARY
        logger.info(f"Booking {booking.id} delivered to {booking.place.value}")
        return booking

    def complete(self, booking: AnyBooking) -> Booking:
        """DELIVERED -> DONE, every book goes back on the shelf."""
        self._require_stored(booking, "complete")
        with self._transaction():
            self._apply(booking, BookingState.DONE)
        logger.info(f"Booking {booking.id} done")
        return booking

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------
    def basket(self, actor: User) -> Tuple[Optional[AnyBooking], List[Booking]]:
        """Current working booking and all the other bookings of the user."""
        current = self._find_for_user(actor, create=False)
        others = self.find_by_user(actor.id)
        if isinstance(current, Booking):
            others = [b for b in others if b.id != current.id]
        others.sort(key=lambda b: _STATE_ORDER.index(b.state))
        return current, others

    def find_by_user(self, user_id: int) -> List[Booking]:
        return self.db.query(Booking).filter(Booking.user_id == user_id).order_by(Booking.id).all()

    def find_delivered_by_user(self, user_id: int) -> List[Booking]:
        return (self.db.query(Booking)
                .filter(Booking.user_id == user_id, Booking.state == BookingState.DELIVERED)
                .order_by(Booking.id)
                .all())

    def find(self, state: Optional[BookingState] = None, email: Optional[str] = None,
             skip: int = 0, limit: int = 20) -> List[Booking]:
        query = self.db.query(Booking)
        if state is not None:
            query = query.filter(Booking.state == state)
        if email:
            query = query.join(User).filter(User.email.ilike(f"%{email}%"))
        return query.order_by(Booking.modified.desc()).offset(skip).limit(limit).all()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _apply(self, booking: Booking, target: BookingState) -> None:
        if target not in TRANSITIONS[booking.state]:
            raise InvalidState(f"Booking in state {booking.state.value} can't become {target.value}")

        reserved, in_stock = COUNTER_EFFECTS[(booking.state, target)]
        for book in booking.books:
            # SQL-side arithmetic so concurrent bookings of one book don't lose updates
            if reserved:
                book.reserved = Book.reserved + reserved
            if in_stock:
                book.in_stock = Book.in_stock + in_stock
        logger.debug(f"Booking {booking.id}: {booking.state.value} -> {target.value}")
        booking.state = target
        booking.modified = self.clock()

    def _store(self, booking: AnyBooking) -> Booking:
        if isinstance(booking, Booking):
            return booking
        stored = Booking(user_id=booking.user_id, state=BookingState.NEW,
                         place=booking.place, modified=self.clock())
        stored.books = [self.read_book(book_id) for book_id in booking.book_ids]
        self.db.add(stored)
        return stored

    @staticmethod
    def _require_new(booking: AnyBooking, action: str) -> None:
        if booking.state != BookingState.NEW:
            raise InvalidState(f"Can't {action} a booking in state {booking.state.value}")

    @staticmethod
    def _require_stored(booking: AnyBooking, action: str) -> None:
        if isinstance(booking, DraftBooking):
            raise InvalidState(f"Can't {action} a booking that was not booked")

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            logger.info(f"Concurrent change rolled back: {exc}")
            raise InvalidState("Booking was changed by another request, reload it") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Transaction rolled back: {exc}")
            raise PersistenceFailure("Unable to save booking changes") from exc
        except Exception:
            self.db.rollback()
            raise
