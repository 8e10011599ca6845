"""
Pending leave-application markers.

The multi-turn "apply for leave" flow asks which leave type the caller wants
and remembers the open application between requests. The marker lives in the
relational store, keyed by (user_id, organization_id), so a retried request
on any worker resumes it. Markers expire after ``ttl_seconds``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, and_, delete, insert, select, update
from sqlalchemy import exc as sa_exc

from app.db_utils import RelationalStore, to_store_error
from backend.services.runtime import log_event

logger = logging.getLogger(__name__)

metadata = MetaData()

pending_leave_applications = Table(
    "PendingLeaveApplications",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("organization_id", String(64), primary_key=True),
    Column("requested_days", Integer, nullable=False, default=1),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class PendingLeaveApplication:
    user_id: str
    organization_id: str
    requested_days: int
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class PendingLeaveStore:
    def __init__(
        self,
        store: RelationalStore,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _key(self, user_id: str, organization_id: str):
        t = pending_leave_applications
        return and_(t.c.user_id == user_id, t.c.organization_id == organization_id)

    def ensure_schema(self) -> None:
        try:
            metadata.create_all(self._store.engine, checkfirst=True)
        except sa_exc.SQLAlchemyError as e:
            raise to_store_error(e) from e

    def record(self, user_id: str, organization_id: str, requested_days: int = 1) -> PendingLeaveApplication:
        """Open (or replace) the caller's pending application. Last writer wins."""
        now = self._clock()
        marker = PendingLeaveApplication(
            user_id=user_id,
            organization_id=organization_id,
            requested_days=max(1, int(requested_days)),
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        values = {
            "requested_days": marker.requested_days,
            "created_at": marker.created_at,
            "expires_at": marker.expires_at,
        }
        t = pending_leave_applications
        try:
            with self._store.engine.begin() as conn:
                conn.execute(delete(t).where(self._key(user_id, organization_id)))
                conn.execute(insert(t).values(user_id=user_id, organization_id=organization_id, **values))
        except sa_exc.IntegrityError:
            # A concurrent request inserted the same key first; overwrite its values.
            try:
                with self._store.engine.begin() as conn:
                    conn.execute(update(t).where(self._key(user_id, organization_id)).values(**values))
            except sa_exc.SQLAlchemyError as e:
                raise to_store_error(e) from e
        except sa_exc.SQLAlchemyError as e:
            raise to_store_error(e) from e
        log_event(logger, logging.INFO, "pending_leave_recorded", requested_days=marker.requested_days)
        return marker

    def get(self, user_id: str, organization_id: str) -> Optional[PendingLeaveApplication]:
        """Return the live marker, or None. Expired markers are removed on read."""
        t = pending_leave_applications
        try:
            with self._store.engine.connect() as conn:
                row = conn.execute(select(t).where(self._key(user_id, organization_id))).mappings().first()
        except sa_exc.SQLAlchemyError as e:
            raise to_store_error(e) from e
        if row is None:
            return None
        marker = PendingLeaveApplication(
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            requested_days=int(row["requested_days"] or 1),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )
        if marker.is_expired(self._clock()):
            log_event(logger, logging.INFO, "pending_leave_expired")
            self.clear(user_id, organization_id)
            return None
        return marker

    def clear(self, user_id: str, organization_id: str) -> None:
        t = pending_leave_applications
        try:
            with self._store.engine.begin() as conn:
                conn.execute(delete(t).where(self._key(user_id, organization_id)))
        except sa_exc.SQLAlchemyError as e:
            raise to_store_error(e) from e
