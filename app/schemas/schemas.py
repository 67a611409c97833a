from pydantic import BaseModel, ConfigDict, Field, constr, field_validator
from datetime import datetime
from typing import List, Optional

from app.models.models import BookingState, Place, Role, UserState


class BookBase(BaseModel):
    title: constr(min_length=1)
    author: constr(min_length=1)
    isbn: Optional[str] = None
    keep_period: int = Field(default=14, ge=0)


class BookCreate(BookBase):
    in_stock: int = Field(default=1, ge=0)

    @field_validator('in_stock')
    @classmethod
    def ensure_non_negative_stock(cls, v):
        if v < 0:
            raise ValueError('in_stock must be >= 0')
        return v


class BookOut(BookBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    in_stock: int
    reserved: int
    created_at: datetime


class UserBase(BaseModel):
    name: constr(min_length=1)
    email: constr(min_length=5)


class UserCreate(UserBase):
    role: Role = Role.USER


class UserOut(UserBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role: Role
    state: UserState
    fine: float
    fine_last_checked: datetime
    joined_at: datetime


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    # None while the booking lives only in the session
    id: Optional[int] = None
    user_id: int
    state: BookingState
    place: Place
    modified: datetime
    book_ids: List[int]


class BasketOut(BaseModel):
    current: Optional[BookingOut] = None
    bookings: List[BookingOut]
