import threading
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.errors import StoreError
from db.database import open_session
from db.models import ChatSession, Message


USER_ROLE = "user"
MODEL_ROLE = "model"


@dataclass
class Turn:
    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.utcnow)


def _save_message(db: Session, session_id: str, role: str, content: str) -> None:
    """
    Save a single chat message and update session last_active.
    """
    now = datetime.utcnow()
    db.add(Message(session_id=session_id, role=role, content=content, created_at=now))

    session = db.query(ChatSession).filter_by(session_id=session_id).first()
    if session:
        session.last_active = now


def _load_turns(db: Session, session_id: str) -> list[Turn]:
    messages = (
        db.query(Message)
        .filter_by(session_id=session_id)
        .order_by(Message.id.asc())
        .all()
    )
    return [Turn(role=m.role, content=m.content, timestamp=m.created_at) for m in messages]


class SqlHistoryStore:
    def __init__(self, session_factory: sessionmaker, lock=None):
        self.session_factory = session_factory
        self.lock = lock

    def get_or_create_history(self, session_id: str, system_instruction: str) -> list[Turn]:
        """
        Get the session's turns, seeding a new session with the system instruction.
        """
        with open_session(self.session_factory, self.lock) as db:
            try:
                if db.query(ChatSession).filter_by(session_id=session_id).first() is None:
                    now = datetime.utcnow()
                    db.add(ChatSession(session_id=session_id, created_at=now, last_active=now))
                    db.flush()
                    _save_message(db, session_id, USER_ROLE, system_instruction)
                    db.commit()
                return _load_turns(db, session_id)
            except IntegrityError:
                # seeded concurrently by another request
                db.rollback()
                return _load_turns(db, session_id)
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to load session history for {session_id}: {e}") from e

    def get_history(self, session_id: str) -> list[Turn]:
        with open_session(self.session_factory, self.lock) as db:
            try:
                return _load_turns(db, session_id)
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to load session history for {session_id}: {e}") from e

    def _append(self, session_id: str, role: str, text: str) -> None:
        with open_session(self.session_factory, self.lock) as db:
            try:
                _save_message(db, session_id, role, text)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(f"Failed to store {role} turn for {session_id}: {e}") from e

    def append_user_turn(self, session_id: str, text: str) -> None:
        self._append(session_id, USER_ROLE, text)

    def append_model_turn(self, session_id: str, text: str) -> None:
        self._append(session_id, MODEL_ROLE, text)


class MemoryHistoryStore:
    def __init__(self):
        self._lock = threading.Lock()
        # session_id -> ordered turns
        self._sessions: dict[str, list[Turn]] = {}

    def get_or_create_history(self, session_id: str, system_instruction: str) -> list[Turn]:
        with self._lock:
            turns = self._sessions.get(session_id)
            if turns is None:
                turns = [Turn(role=USER_ROLE, content=system_instruction)]
                self._sessions[session_id] = turns
            return list(turns)

    def get_history(self, session_id: str) -> list[Turn]:
        with self._lock:
            return list(self._sessions.get(session_id, []))

    def _append(self, session_id: str, role: str, text: str) -> None:
        with self._lock:
            turns = self._sessions.get(session_id)
            if turns is None:
                raise StoreError(f"Session {session_id} has no history to append to")
            turns.append(Turn(role=role, content=text))

    def append_user_turn(self, session_id: str, text: str) -> None:
        self._append(session_id, USER_ROLE, text)

    def append_model_turn(self, session_id: str, text: str) -> None:
        self._append(session_id, MODEL_ROLE, text)
