"""State store backed by the state_entry table"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recon_gateway.domain.state import StateStore
from recon_gateway.infrastructure.database.models import StateEntryRow


def _utcnow() -> datetime:
    # Naive UTC so comparisons behave the same on SQLite and Postgres
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlStateStore(StateStore):
    """Each operation runs in its own short-lived session"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _deadline(ttl: Optional[int]) -> Optional[datetime]:
        return None if ttl is None else _utcnow() + timedelta(seconds=ttl)

    @staticmethod
    def _live(db: Session, key: str) -> Optional[StateEntryRow]:
        return (
            db.query(StateEntryRow)
            .filter(
                StateEntryRow.key == key,
                or_(StateEntryRow.expires_at.is_(None), StateEntryRow.expires_at > _utcnow()),
            )
            .first()
        )

    def get(self, key: str) -> Optional[str]:
        with self._session() as db:
            row = self._live(db, key)
            return row.value if row else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._session() as db:
            row = db.get(StateEntryRow, key)
            if row is None:
                db.add(StateEntryRow(key=key, value=value, expires_at=self._deadline(ttl)))
            else:
                row.value = value
                row.expires_at = self._deadline(ttl)

    def expire(self, key: str, ttl: int) -> bool:
        with self._session() as db:
            row = self._live(db, key)
            if row is None:
                return False
            row.expires_at = self._deadline(ttl)
            return True

    def delete(self, key: str) -> None:
        with self._session() as db:
            db.query(StateEntryRow).filter(StateEntryRow.key == key).delete()

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        try:
            with self._session() as db:
                # Expired entries do not block a new value
                db.query(StateEntryRow).filter(
                    StateEntryRow.key == key,
                    StateEntryRow.expires_at.isnot(None),
                    StateEntryRow.expires_at <= _utcnow(),
                ).delete()
                db.add(StateEntryRow(key=key, value=value, expires_at=self._deadline(ttl)))
                db.flush()
        except IntegrityError:
            return False
        return True
