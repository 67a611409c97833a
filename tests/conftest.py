from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.core.session import SessionStore
from app.main import app
from app.models.models import Book, Booking, BookingState, Place, Role, User


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.sessions = SessionStore()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def make_user(db, email="reader@example.com", role=Role.USER, fine=0.0, fine_last_checked=None):
    user = User(name=email.split("@")[0], email=email, role=role, fine=fine,
                fine_last_checked=fine_last_checked or datetime.utcnow())
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_book(db, title="Dune", in_stock=3, reserved=0, keep_period=14):
    book = Book(title=title, author="Frank Herbert", in_stock=in_stock, reserved=reserved,
                keep_period=keep_period)
    db.add(book)
    db.commit()
    db.refresh(book)
    return book


def make_booking(db, user, books, state=BookingState.BOOKED, place=Place.LIBRARY, modified=None):
    booking = Booking(user_id=user.id, state=state, place=place, modified=modified or datetime.utcnow())
    booking.books = list(books)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking
