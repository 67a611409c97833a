import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models import models
from app.models.models import BookingState
from app.schemas import schemas
from app.services.bookings import BookingService

logger = logging.getLogger("library.api")

router = APIRouter()


# -----------------------------
# Request context
# -----------------------------
def get_actor(x_user_id: Optional[int] = Header(None), db: Session = Depends(get_db)) -> models.User:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    user = db.query(models.User).filter(models.User.id == x_user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def get_booking_service(request: Request,
                        actor: models.User = Depends(get_actor),
                        x_session_id: Optional[str] = Header(None),
                        db: Session = Depends(get_db)) -> BookingService:
    session_id = x_session_id or f"user-{actor.id}"
    return BookingService(db, request.app.state.sessions, session_id)


# -----------------------------
# Books
# -----------------------------
@router.post("/books/", response_model=schemas.BookOut)
def create_book(book_in: schemas.BookCreate, db: Session = Depends(get_db)):
    if book_in.isbn:
        existing = db.query(models.Book).filter(models.Book.isbn == book_in.isbn).first()
        if existing:
            raise HTTPException(status_code=400, detail="ISBN already exists")
    book = models.Book(
        title=book_in.title.strip(),
        author=book_in.author.strip(),
        isbn=book_in.isbn,
        keep_period=book_in.keep_period,
        in_stock=book_in.in_stock,
        reserved=0,
    )
    db.add(book)
    db.commit()
    db.refresh(book)
    logger.info(f"Created book id={book.id} title={book.title}")
    return book


@router.get("/books/{book_id}", response_model=schemas.BookOut)
def read_book(book_id: int, db: Session = Depends(get_db)):
    book = db.query(models.Book).filter(models.Book.id == book_id).first()
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


# -----------------------------
# Users
# -----------------------------
@router.post("/users/", response_model=schemas.UserOut)
def create_user(user_in: schemas.UserCreate, db: Session = Depends(get_db)):
    existing = db.query(models.User).filter(models.User.email == user_in.email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = models.User(name=user_in.name.strip(), email=user_in.email.strip(), role=user_in.role, fine=0.0)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user id={user.id} email={user.email}")
    return user


@router.get("/users/{user_id}", response_model=schemas.UserOut)
def read_user(user_id: int, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# -----------------------------
# Working booking (USER role)
# -----------------------------
@router.get("/booking", response_model=schemas.BasketOut)
def basket(actor: models.User = Depends(get_actor),
           service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "basket")
    current, others = service.basket(actor)
    return schemas.BasketOut(
        current=schemas.BookingOut.model_validate(current) if current is not None else None,
        bookings=[schemas.BookingOut.model_validate(b) for b in others],
    )


@router.post("/booking/books/{book_id}", response_model=schemas.BookingOut)
def add_book(book_id: int, actor: models.User = Depends(get_actor),
             service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "add_book")
    # an unknown book must not leave an empty working booking behind
    service.read_book(book_id)
    booking = service.find_booking(actor, create=True)
    return service.add_book(booking, book_id)


@router.delete("/booking/books/{book_id}", response_model=schemas.BookingOut)
def remove_book(book_id: int, actor: models.User = Depends(get_actor),
                service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "remove_book")
    booking = service.find_booking(actor)
    return service.remove_book(booking, book_id)


@router.post("/booking/book", response_model=schemas.BookingOut)
def commit_booking(actor: models.User = Depends(get_actor),
                   service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "commit")
    booking = service.find_booking(actor)
    return service.commit(booking)


@router.post("/booking/save", response_model=schemas.BookingOut)
def save_booking(actor: models.User = Depends(get_actor),
                 service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "save")
    booking = service.find_booking(actor)
    return service.save(booking)


@router.post("/booking/cancel", response_model=schemas.BookingOut)
def cancel_booking(booking_id: Optional[int] = None, actor: models.User = Depends(get_actor),
                   service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "cancel")
    booking = service.find_booking(actor, booking_id)
    return service.cancel(booking)


@router.get("/booking/subscription", response_model=List[schemas.BookingOut])
def subscription(actor: models.User = Depends(get_actor),
                 service: BookingService = Depends(get_booking_service)):
    return service.find_delivered_by_user(actor.id)


# -----------------------------
# Stored bookings (LIBRARIAN role)
# -----------------------------
@router.get("/bookings/", response_model=List[schemas.BookingOut])
def find_bookings(state: Optional[BookingState] = None,
                  email: Optional[str] = Query(None, description="search by user email"),
                  skip: int = 0, limit: int = 20,
                  actor: models.User = Depends(get_actor),
                  service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "find")
    return service.find(state=state, email=email, skip=skip, limit=limit)


@router.post("/bookings/{booking_id}/deliver", response_model=schemas.BookingOut)
def deliver_booking(booking_id: int, subscription: bool = False,
                    actor: models.User = Depends(get_actor),
                    service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "deliver")
    booking = service.find_booking(actor, booking_id)
    return service.deliver(booking, subscription)


@router.post("/bookings/{booking_id}/done", response_model=schemas.BookingOut)
def complete_booking(booking_id: int, actor: models.User = Depends(get_actor),
                     service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "complete")
    booking = service.find_booking(actor, booking_id)
    return service.complete(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=schemas.BookingOut)
def cancel_stored_booking(booking_id: int, actor: models.User = Depends(get_actor),
                          service: BookingService = Depends(get_booking_service)):
    service.authorize(actor, "cancel")
    booking = service.find_booking(actor, booking_id)
    return service.cancel(booking)
