"""
Persistence for help requests.

Every status change goes through ``conditional_update``: the write is applied
only if the record still has the expected status, and the returned count says
whether it was. Callers must trust that count, never a prior read.
"""

import logging
import threading
from typing import Optional, Protocol

from sqlalchemy import update
from sqlmodel import Session

from models import HelpRequest, User

logger = logging.getLogger(__name__)


class RequestStore(Protocol):
    def find_by_id(self, request_id: int) -> Optional[HelpRequest]: ...

    def conditional_update(
        self, request_id: int, expected_status: str, fields: dict
    ) -> int: ...

    def find_owner_email(self, user_id: int) -> Optional[str]: ...


class SqlRequestStore:
    """Store backed by a SQLModel session.

    ``conditional_update`` issues a single
    ``UPDATE requests SET ... WHERE id = ? AND status = ?`` and returns the
    rowcount, so the database decides which of several concurrent writers wins.
    """

    def __init__(self, session: Session):
        self.session = session

    def find_by_id(self, request_id: int) -> Optional[HelpRequest]:
        # populate_existing: observe the committed row, not a cached identity.
        return self.session.get(HelpRequest, request_id, populate_existing=True)

    def conditional_update(
        self, request_id: int, expected_status: str, fields: dict
    ) -> int:
        stmt = (
            update(HelpRequest)
            .where(
                HelpRequest.id == request_id,
                HelpRequest.status == expected_status,
            )
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        affected = result.rowcount or 0
        logger.debug(
            "request %s: update where status=%s matched %d row(s)",
            request_id, expected_status, affected,
        )
        return affected

    def find_owner_email(self, user_id: int) -> Optional[str]:
        owner = self.session.get(User, user_id)
        return owner.email if owner else None


class MemoryRequestStore:
    """In-process fallback for storage without atomic conditional updates.

    Each record gets its own lock; check-and-write for a request id happens
    while holding that lock.
    """

    def __init__(self, owner_emails: Optional[dict] = None):
        # Rows are kept as plain dicts; callers only ever see fresh copies.
        self._rows: dict[int, dict] = {}
        self._owner_emails: dict[int, str] = dict(owner_emails or {})
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._next_id = 1

    def _lock_for(self, request_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(request_id)
            if lock is None:
                lock = self._locks[request_id] = threading.Lock()
            return lock

    def add(self, req: HelpRequest) -> HelpRequest:
        data = req.model_dump()
        with self._locks_guard:
            if data["id"] is None:
                data["id"] = self._next_id
            self._next_id = max(self._next_id, data["id"]) + 1
        with self._lock_for(data["id"]):
            self._rows[data["id"]] = data
        return self.find_by_id(data["id"])

    def set_owner_email(self, user_id: int, email: Optional[str]) -> None:
        if email is None:
            self._owner_emails.pop(user_id, None)
        else:
            self._owner_emails[user_id] = email

    def find_by_id(self, request_id: int) -> Optional[HelpRequest]:
        with self._lock_for(request_id):
            row = self._rows.get(request_id)
            return HelpRequest(**row) if row is not None else None

    def conditional_update(
        self, request_id: int, expected_status: str, fields: dict
    ) -> int:
        with self._lock_for(request_id):
            row = self._rows.get(request_id)
            if row is None or row["status"] != expected_status:
                return 0
            self._rows[request_id] = {**row, **fields}
            return 1

    def find_owner_email(self, user_id: int) -> Optional[str]:
        return self._owner_emails.get(user_id)
