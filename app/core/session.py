"""Per-session state kept in process memory.

A session holds at most one working booking that has not been committed to
the database yet. Only the session that created it can see or change it.
A session is only kept while it holds something.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from app.models.models import BookingState, Place


@dataclass
class DraftBooking:
    """A NEW booking that so far lives only in a session."""
    user_id: int
    book_ids: List[int] = field(default_factory=list)
    state: BookingState = BookingState.NEW
    place: Place = Place.LIBRARY
    modified: datetime = field(default_factory=datetime.utcnow)
    id: Optional[int] = None


@dataclass
class SessionState:
    working_booking: Optional[DraftBooking] = None


class SessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_booking(self, session_id: str) -> Optional[DraftBooking]:
        state = self.get(session_id)
        return state.working_booking if state is not None else None

    def claim_booking(self, session_id: str, booking: DraftBooking) -> Optional[str]:
        """Store ``booking`` unless its user already has one in another session.

        Returns the id of the session holding the user's draft on conflict.
        """
        with self._lock:
            for other_id, state in self._sessions.items():
                draft = state.working_booking
                if other_id != session_id and draft is not None and draft.user_id == booking.user_id:
                    return other_id
            self._sessions.setdefault(session_id, SessionState()).working_booking = booking
        return None

    def remove_booking(self, session_id: str) -> None:
        # the working booking is all a session holds
        with self._lock:
            self._sessions.pop(session_id, None)
