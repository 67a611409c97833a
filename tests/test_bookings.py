import pytest

from app.core.exceptions import Forbidden, InvalidState, NotFound, PersistenceFailure
from app.core.session import DraftBooking, SessionStore
from app.models.models import Book, Booking, BookingState, Place, Role
from app.services.bookings import BookingService, TRANSITIONS

from conftest import make_book, make_booking, make_user


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def service(db, sessions):
    return BookingService(db, sessions, "session-1")


@pytest.fixture
def reader(db):
    return make_user(db)


@pytest.fixture
def librarian(db):
    return make_user(db, email="librarian@example.com", role=Role.LIBRARIAN)


def counters(db, *books):
    db.expire_all()
    return [(db.get(Book, b.id).reserved, db.get(Book, b.id).in_stock) for b in books]


def test_transition_table():
    assert TRANSITIONS[BookingState.NEW] == {BookingState.BOOKED, BookingState.CANCELED}
    assert TRANSITIONS[BookingState.BOOKED] == {BookingState.CANCELED, BookingState.DELIVERED}
    assert TRANSITIONS[BookingState.DELIVERED] == {BookingState.DONE}
    assert TRANSITIONS[BookingState.DONE] == set()
    assert TRANSITIONS[BookingState.CANCELED] == set()


def test_first_add_creates_session_booking(db, service, sessions, reader):
    book = make_book(db)
    booking = service.find_booking(reader, create=True)
    service.add_book(booking, book.id)

    draft = sessions.get_booking("session-1")
    assert isinstance(draft, DraftBooking)
    assert draft.book_ids == [book.id]
    assert db.query(Booking).count() == 0


def test_add_same_book_twice_keeps_one_membership(db, service, reader):
    book = make_book(db)
    booking = service.find_booking(reader, create=True)
    service.add_book(booking, book.id)
    service.add_book(booking, book.id)
    assert booking.book_ids == [book.id]


def test_add_keeps_insertion_order(db, service, reader):
    first = make_book(db, title="First")
    second = make_book(db, title="Second")
    booking = service.find_booking(reader, create=True)
    service.add_book(booking, second.id)
    service.add_book(booking, first.id)

    stored = service.commit(booking)
    assert stored.book_ids == [second.id, first.id]


def test_add_unknown_book(service, reader):
    booking = service.find_booking(reader, create=True)
    with pytest.raises(NotFound):
        service.add_book(booking, 9999)


def test_remove_book(db, service, reader):
    keep = make_book(db, title="Keep")
    drop = make_book(db, title="Drop")
    booking = service.find_booking(reader, create=True)
    service.add_book(booking, keep.id)
    service.add_book(booking, drop.id)

    service.remove_book(booking, drop.id)
    service.remove_book(booking, drop.id)
    assert booking.book_ids == [keep.id]


def test_user_with_fine_cannot_start_booking(db, sessions):
    debtor = make_user(db, email="debtor@example.com", fine=2.5)
    service = BookingService(db, sessions, "debtor")
    with pytest.raises(Forbidden):
        service.find_booking(debtor, create=True)
    assert sessions.get_booking("debtor") is None


def test_no_working_booking_without_create(service, reader):
    with pytest.raises(NotFound):
        service.find_booking(reader)


def test_stored_new_booking_is_found_before_creating_one(db, service, reader):
    book = make_book(db)
    stored = make_booking(db, reader, [book], state=BookingState.NEW)

    booking = service.find_booking(reader, create=True)
    assert isinstance(booking, Booking)
    assert booking.id == stored.id

    other = make_book(db, title="Other")
    service.add_book(booking, other.id)
    db.expire_all()
    assert db.get(Booking, stored.id).book_ids == [book.id, other.id]


def test_commit_persists_and_reserves(db, service, sessions, reader):
    books = [make_book(db, title="A"), make_book(db, title="B")]
    booking = service.find_booking(reader, create=True)
    for book in books:
        service.add_book(booking, book.id)

    stored = service.commit(booking)

    assert stored.id is not None
    assert stored.state == BookingState.BOOKED
    assert sessions.get_booking("session-1") is None
    assert counters(db, *books) == [(1, 3), (1, 3)]


def test_commit_empty_booking(service, reader):
    booking = service.find_booking(reader, create=True)
    with pytest.raises(InvalidState):
        service.commit(booking)


def test_save_writes_new_booking(db, service, sessions, reader):
    book = make_book(db)
    booking = service.find_booking(reader, create=True)
    service.add_book(booking, book.id)

    stored = service.save(booking)
    assert stored.state == BookingState.NEW
    assert sessions.get_booking("session-1") is None
    assert counters(db, book) == [(0, 3)]
    assert service.find_booking(reader).id == stored.id


def test_cancel_session_booking_touches_nothing(db, service, sessions, reader):
    book = make_book(db)
    booking = service.find_booking(reader, create=True)
    service.add_book(booking, book.id)

    canceled = service.cancel(booking)

    assert canceled.state == BookingState.CANCELED
    assert sessions.get_booking("session-1") is None
    assert db.query(Booking).count() == 0
    assert counters(db, book) == [(0, 3)]


def test_cancel_booked_releases_reservations(db, service, librarian, reader):
    books = [make_book(db, title="A", reserved=1), make_book(db, title="B", reserved=2)]
    booking = make_booking(db, reader, books)

    found = service.find_booking(librarian, booking.id)
    service.cancel(found)

    assert found.state == BookingState.CANCELED
    assert counters(db, *books) == [(0, 3), (1, 3)]


def test_deliver_then_done(db, service, librarian, reader):
    books = [make_book(db, title="A", reserved=1), make_book(db, title="B", reserved=1)]
    booking = make_booking(db, reader, books)

    found = service.find_booking(librarian, booking.id)
    service.deliver(found, subscription=True)
    assert found.state == BookingState.DELIVERED
    assert found.place == Place.USER
    assert counters(db, *books) == [(0, 2), (0, 2)]

    service.complete(found)
    assert found.state == BookingState.DONE
    assert counters(db, *books) == [(0, 3), (0, 3)]


def test_deliver_to_reading_room(db, service, librarian, reader):
    book = make_book(db, reserved=1)
    booking = make_booking(db, reader, [book])
    service.deliver(service.find_booking(librarian, booking.id))
    assert booking.place == Place.LIBRARY


@pytest.mark.parametrize("state, action", [
    (BookingState.NEW, "deliver"),
    (BookingState.NEW, "complete"),
    (BookingState.BOOKED, "complete"),
    (BookingState.BOOKED, "commit"),
    (BookingState.DELIVERED, "cancel"),
    (BookingState.DELIVERED, "deliver"),
    (BookingState.DONE, "cancel"),
    (BookingState.DONE, "complete"),
    (BookingState.CANCELED, "cancel"),
    (BookingState.CANCELED, "deliver"),
])
def test_illegal_transition_changes_nothing(db, service, reader, state, action):
    book = make_book(db, reserved=1)
    booking = make_booking(db, reader, [book], state=state)
    modified = booking.modified

    with pytest.raises(InvalidState):
        getattr(service, action)(booking)

    db.expire_all()
    reloaded = db.get(Booking, booking.id)
    assert reloaded.state == state
    assert reloaded.modified == modified
    assert counters(db, book) == [(1, 3)]


@pytest.mark.parametrize("state", [BookingState.BOOKED, BookingState.DELIVERED, BookingState.DONE])
def test_books_only_change_while_new(db, service, reader, state):
    book = make_book(db, reserved=1)
    other = make_book(db, title="Other")
    booking = make_booking(db, reader, [book], state=state)

    with pytest.raises(InvalidState):
        service.add_book(booking, other.id)
    with pytest.raises(InvalidState):
        service.remove_book(booking, book.id)


def test_failed_write_rolls_back_every_counter(db, service, librarian, reader):
    on_shelf = make_book(db, title="On shelf", in_stock=2, reserved=1)
    missing = make_book(db, title="Missing", in_stock=0, reserved=1)
    booking = make_booking(db, reader, [on_shelf, missing])

    found = service.find_booking(librarian, booking.id)
    with pytest.raises(PersistenceFailure):
        service.deliver(found)

    db.expire_all()
    assert db.get(Booking, booking.id).state == BookingState.BOOKED
    assert counters(db, on_shelf, missing) == [(1, 2), (1, 0)]


def test_librarian_must_name_booking(service, librarian):
    with pytest.raises(NotFound):
        service.find_booking(librarian)
    with pytest.raises(NotFound):
        service.find_booking(librarian, 12345)


def test_user_cannot_use_other_users_booking(db, service, reader):
    stranger = make_user(db, email="stranger@example.com")
    booking = make_booking(db, stranger, [make_book(db, reserved=1)])
    with pytest.raises(Forbidden):
        service.find_booking(reader, booking.id)


def test_user_cancels_own_booked_booking(db, service, reader):
    book = make_book(db, reserved=1)
    booking = make_booking(db, reader, [book])
    service.cancel(service.find_booking(reader, booking.id))
    assert counters(db, book) == [(0, 3)]


@pytest.mark.parametrize("role, action", [
    (Role.USER, "deliver"),
    (Role.USER, "complete"),
    (Role.LIBRARIAN, "add_book"),
    (Role.LIBRARIAN, "commit"),
    (Role.ADMIN, "cancel"),
    (Role.UNKNOWN, "basket"),
])
def test_authorize_rejects_role(db, service, role, action):
    actor = make_user(db, email=f"{role.value.lower()}@example.com", role=role)
    with pytest.raises(Forbidden):
        service.authorize(actor, action)


def test_admin_has_no_bookings(db, service):
    admin = make_user(db, email="admin@example.com", role=Role.ADMIN)
    with pytest.raises(Forbidden):
        service.find_booking(admin, create=True)


def test_basket_lists_current_and_history(db, service, reader):
    book = make_book(db, reserved=1)
    done = make_booking(db, reader, [book], state=BookingState.DONE)
    booked = make_booking(db, reader, [book], state=BookingState.BOOKED)
    draft = service.find_booking(reader, create=True)

    current, others = service.basket(reader)
    assert current is draft
    assert [b.id for b in others] == [booked.id, done.id]


def test_find_filters_by_state_and_email(db, service, reader):
    other = make_user(db, email="other@example.com")
    book = make_book(db, reserved=2)
    mine = make_booking(db, reader, [book])
    make_booking(db, other, [book])
    make_booking(db, reader, [book], state=BookingState.DONE)

    found = service.find(state=BookingState.BOOKED, email="reader")
    assert [b.id for b in found] == [mine.id]


def test_one_working_booking_per_user(db, sessions, reader):
    book = make_book(db)
    first_tab = BookingService(db, sessions, "tab-1")
    second_tab = BookingService(db, sessions, "tab-2")
    first_tab.add_book(first_tab.find_booking(reader, create=True), book.id)

    with pytest.raises(InvalidState):
        second_tab.find_booking(reader, create=True)
    assert sessions.get_booking("tab-2") is None

    first_tab.save(first_tab.find_booking(reader))
    # the saved booking is the working booking everywhere now
    assert second_tab.find_booking(reader, create=True).book_ids == [book.id]
    assert db.query(Booking).filter(Booking.state == BookingState.NEW).count() == 1


def test_save_refuses_second_new_booking(db, service, sessions, reader):
    book = make_book(db)
    stored = make_booking(db, reader, [book], state=BookingState.NEW)
    draft = DraftBooking(user_id=reader.id, book_ids=[book.id])
    sessions.claim_booking("session-1", draft)

    with pytest.raises(InvalidState):
        service.save(draft)
    assert [b.id for b in db.query(Booking).all()] == [stored.id]


def test_session_is_forgotten_with_its_booking(db, service, sessions, reader):
    book = make_book(db)
    service.basket(reader)
    assert len(sessions) == 0

    service.add_book(service.find_booking(reader, create=True), book.id)
    assert len(sessions) == 1
    service.cancel(service.find_booking(reader))
    assert len(sessions) == 0


def test_concurrent_transitions_on_one_booking(db, session_factory, librarian, reader):
    book = make_book(db, in_stock=3, reserved=2)
    booking = make_booking(db, reader, [book])
    make_booking(db, reader, [book])

    db_a, db_b = session_factory(), session_factory()
    try:
        first = BookingService(db_a, SessionStore(), "librarian-a")
        second = BookingService(db_b, SessionStore(), "librarian-b")
        seen_by_first = first.find_booking(librarian, booking.id)
        seen_by_second = second.find_booking(librarian, booking.id)

        first.deliver(seen_by_first)
        with pytest.raises(InvalidState):
            second.cancel(seen_by_second)
    finally:
        db_a.close()
        db_b.close()

    db.expire_all()
    assert db.get(Booking, booking.id).state == BookingState.DELIVERED
    # the other BOOKED booking keeps its reservation
    assert counters(db, book) == [(1, 2)]
