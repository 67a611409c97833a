import enum
from datetime import datetime

from sqlalchemy import (Column, Integer, String, Float, DateTime, Enum, ForeignKey, Table,
                        UniqueConstraint, CheckConstraint, Index)
from sqlalchemy.orm import relationship

from app.core.database import Base


class Role(str, enum.Enum):
    USER = "USER"
    LIBRARIAN = "LIBRARIAN"
    ADMIN = "ADMIN"
    UNKNOWN = "UNKNOWN"


class UserState(str, enum.Enum):
    VALID = "VALID"
    BLOCKED = "BLOCKED"


class BookingState(str, enum.Enum):
    NEW = "NEW"
    BOOKED = "BOOKED"
    CANCELED = "CANCELED"
    DELIVERED = "DELIVERED"
    DONE = "DONE"


class Place(str, enum.Enum):
    LIBRARY = "LIBRARY"
    USER = "USER"


# Membership rows; id keeps insertion order, the unique pair keeps it a set.
booking_books = Table(
    "booking_books",
    Base.metadata,
    Column("id", Integer, primary_key=True),
    Column("booking_id", Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("book_id", Integer, ForeignKey("books.id"), nullable=False, index=True),
    UniqueConstraint("booking_id", "book_id", name="uq_booking_book"),
)


class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, index=True, nullable=True)
    keep_period = Column(Integer, nullable=False, default=14)
    # in_stock and reserved change only through booking transitions
    in_stock = Column(Integer, nullable=False, default=1)
    reserved = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("in_stock >= 0", name="check_book_in_stock_non_negative"),
        CheckConstraint("reserved >= 0", name="check_book_reserved_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Book(id={self.id}, in_stock={self.in_stock}, reserved={self.reserved})>"

Index('ix_books_title_author', Book.title, Book.author)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(Enum(Role), nullable=False, default=Role.USER)
    state = Column(Enum(UserState), nullable=False, default=UserState.VALID)
    fine = Column(Float, nullable=False, default=0.0)
    fine_last_checked = Column(DateTime, nullable=False, default=datetime.utcnow)
    modified = Column(DateTime, default=datetime.utcnow)
    joined_at = Column(DateTime, default=datetime.utcnow)

    bookings = relationship("Booking", back_populates="user")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role}, fine={self.fine})>"


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    state = Column(Enum(BookingState), nullable=False, default=BookingState.NEW, index=True)
    place = Column(Enum(Place), nullable=False, default=Place.LIBRARY)
    modified = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    # every UPDATE checks and bumps it; a stale copy fails with StaleDataError
    version = Column(Integer, nullable=False, default=1)

    user = relationship("User", back_populates="bookings")
    books = relationship("Book", secondary=booking_books, order_by=booking_books.c.id)

    __mapper_args__ = {"version_id_col": version}

    @property
    def book_ids(self):
        return [book.id for book in self.books]

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, user={self.user_id}, state={self.state}, place={self.place})>"
